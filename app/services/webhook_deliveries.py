"""Delivery record store — one row per (endpoint config, event), never deleted."""

import json
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.models import DeliveryStatus, WebhookConfig, WebhookDelivery, utcnow
from app.models.webhook import DUE_STATUSES

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 1000


class DeliveryStateError(RuntimeError):
    """A write was attempted on a delivery that already reached success/failed."""


def sanitize_limit(limit, default: int = DEFAULT_LIST_LIMIT) -> int:
    try:
        value = int(limit)
    except (TypeError, ValueError):
        value = default
    return min(max(1, value), MAX_LIST_LIMIT)


def truncate(text: Optional[str], limit: int) -> Optional[str]:
    if text is None:
        return None
    return text[:limit]


class WebhookDeliveryService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_delivery(
        self,
        webhook_config_id: str,
        tenant_id: str,
        event_type: str,
        payload: dict,
        max_attempts: Optional[int] = None,
    ) -> WebhookDelivery:
        delivery = WebhookDelivery(
            webhook_config_id=webhook_config_id,
            tenant_id=tenant_id,
            event_type=event_type,
            payload=json.dumps(payload),
            status=DeliveryStatus.PENDING.value,
            attempt_count=0,
            max_attempts=max_attempts or get_settings().webhook_max_attempts,
        )
        self.db.add(delivery)
        await self.db.commit()
        await self.db.refresh(delivery)
        logger.info(f"Webhook delivery created: id={delivery.id} event={event_type} tenant={tenant_id}")
        return delivery

    async def get_delivery(self, delivery_id: str) -> Optional[WebhookDelivery]:
        result = await self.db.execute(select(WebhookDelivery).where(WebhookDelivery.id == delivery_id))
        return result.scalar_one_or_none()

    async def list_for_tenant(
        self,
        tenant_id: str,
        status: Optional[str] = None,
        event_type: Optional[str] = None,
        limit=DEFAULT_LIST_LIMIT,
    ) -> list[WebhookDelivery]:
        stmt = select(WebhookDelivery).where(WebhookDelivery.tenant_id == tenant_id)
        if status:
            stmt = stmt.where(WebhookDelivery.status == status)
        if event_type:
            stmt = stmt.where(WebhookDelivery.event_type == event_type)
        stmt = stmt.order_by(WebhookDelivery.created_at.desc()).limit(sanitize_limit(limit))
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_pending_retries(
        self, now: Optional[datetime] = None, limit: Optional[int] = None
    ) -> list[WebhookDelivery]:
        """Deliveries due for an attempt, oldest first.

        Deliveries of disabled configs are left out so they cannot fill the
        batch; deliveries whose config is gone are kept so they get failed.
        """
        now = now or utcnow()
        limit = limit or get_settings().webhook_retry_batch_size
        result = await self.db.execute(
            select(WebhookDelivery)
            .outerjoin(WebhookConfig, WebhookConfig.id == WebhookDelivery.webhook_config_id)
            .where(
                WebhookDelivery.status.in_(DUE_STATUSES),
                or_(WebhookConfig.id.is_(None), WebhookConfig.enabled.is_(True)),
                WebhookDelivery.attempt_count < WebhookDelivery.max_attempts,
                or_(WebhookDelivery.next_retry_at.is_(None), WebhookDelivery.next_retry_at <= now),
            )
            .order_by(WebhookDelivery.created_at.asc(), WebhookDelivery.id.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    def _ensure_open(self, delivery: WebhookDelivery):
        if delivery.is_terminal:
            raise DeliveryStateError(
                f"Delivery {delivery.id} is already {delivery.status}; refusing further writes"
            )

    async def mark_success(
        self,
        delivery: WebhookDelivery,
        response_status: int,
        response_body: Optional[str],
        duration_ms: int,
        now: Optional[datetime] = None,
    ) -> WebhookDelivery:
        self._ensure_open(delivery)
        now = now or utcnow()
        delivery.attempt_count = (delivery.attempt_count or 0) + 1
        delivery.status = DeliveryStatus.SUCCESS.value
        delivery.last_response_status = response_status
        delivery.last_response_body = truncate(response_body, get_settings().webhook_response_body_limit)
        delivery.last_error = None
        delivery.duration_ms = duration_ms
        delivery.next_retry_at = None
        delivery.delivered_at = now
        delivery.updated_at = now
        await self.db.commit()
        return delivery

    async def mark_attempt_failed(
        self,
        delivery: WebhookDelivery,
        error: str,
        next_retry_at_for,
        response_status: Optional[int] = None,
        response_body: Optional[str] = None,
        duration_ms: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> WebhookDelivery:
        """Record a failed attempt.

        ``next_retry_at_for`` maps the new attempt count to the next retry
        time; it is only consulted while attempts remain.
        """
        self._ensure_open(delivery)
        now = now or utcnow()
        attempts = (delivery.attempt_count or 0) + 1
        delivery.attempt_count = attempts
        delivery.last_response_status = response_status
        delivery.last_response_body = truncate(response_body, get_settings().webhook_response_body_limit)
        delivery.last_error = error
        delivery.duration_ms = duration_ms
        delivery.updated_at = now
        if attempts < delivery.max_attempts:
            delivery.status = DeliveryStatus.RETRYING.value
            delivery.next_retry_at = next_retry_at_for(attempts)
        else:
            delivery.status = DeliveryStatus.FAILED.value
            delivery.next_retry_at = None
        await self.db.commit()
        return delivery

    async def mark_abandoned(self, delivery: WebhookDelivery, error: str) -> WebhookDelivery:
        """Fail a delivery permanently without counting an attempt."""
        self._ensure_open(delivery)
        delivery.status = DeliveryStatus.FAILED.value
        delivery.last_error = error
        delivery.next_retry_at = None
        delivery.updated_at = utcnow()
        await self.db.commit()
        return delivery
