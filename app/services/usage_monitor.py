"""Usage threshold monitor — turns metered usage into webhook events.

Called after the metering collaborator has durably counted a request.
Nothing here may fail or stall that request: :meth:`on_metered_request`
hands the check off to a background task, and every error inside the
check is logged and swallowed.
"""

import asyncio
import logging
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import get_settings
from app.services.usage_notifications import UsageNotificationService
from app.services.webhook_queue import WebhookQueue

logger = logging.getLogger(__name__)

WARNING_THRESHOLD = 80
LIMIT_THRESHOLD = 100
THRESHOLDS = (WARNING_THRESHOLD, LIMIT_THRESHOLD)

QUOTA_EXCEEDED_EVENT = "usage.quota.exceeded"


def threshold_event(threshold: int) -> str:
    return f"usage.threshold.{threshold}"


def usage_percentage(current_usage: int, limit: int) -> float:
    return current_usage / limit * 100


def build_threshold_payload(tenant_id: str, threshold: int, usage_data: dict) -> dict:
    return {
        "event": threshold_event(threshold),
        "client_id": tenant_id,
        "threshold": threshold,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "data": usage_data,
    }


def build_quota_exceeded_payload(tenant_id: str, usage_data: dict) -> dict:
    return {
        "event": QUOTA_EXCEEDED_EVENT,
        "client_id": tenant_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "data": usage_data,
    }


class UsageThresholdMonitor:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        queue: WebhookQueue,
        max_pending: Optional[int] = None,
    ):
        self._session_factory = session_factory
        self.queue = queue
        self.max_pending = max_pending if max_pending is not None else get_settings().usage_monitor_max_pending
        self._tasks: set[asyncio.Task] = set()

    # ── Request-path handoff ─────────────────────────────

    def on_metered_request(
        self, tenant_id: str, current_usage: int, limit: int, billing_cycle_start: date
    ) -> bool:
        """Schedule a threshold check without waiting for it.

        Returns False when the check was dropped because too many are in
        flight. Must be called from inside a running event loop.
        """
        if self.pending >= self.max_pending:
            logger.warning(
                f"Usage monitor backlog full ({self.max_pending}), dropping check for tenant={tenant_id}"
            )
            return False
        try:
            task = asyncio.get_running_loop().create_task(
                self.check(tenant_id, current_usage, limit, billing_cycle_start)
            )
        except RuntimeError as e:
            logger.error(f"Cannot schedule usage check for tenant={tenant_id}: {e}")
            return False
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    @property
    def pending(self) -> int:
        return sum(1 for task in self._tasks if not task.done())

    async def drain(self):
        """Wait for every scheduled check to finish."""
        while True:
            in_flight = [task for task in self._tasks if not task.done()]
            if not in_flight:
                return
            await asyncio.gather(*in_flight, return_exceptions=True)

    # ── Threshold evaluation ─────────────────────────────

    async def check(
        self, tenant_id: str, current_usage: int, limit: int, billing_cycle_start: date
    ) -> list[str]:
        """Raise the threshold events newly crossed this cycle. Returns their types."""
        if not limit or limit <= 0:
            return []

        percentage = usage_percentage(current_usage, limit)
        cycle = billing_cycle_start.isoformat()
        raised: list[str] = []

        try:
            if WARNING_THRESHOLD <= percentage < LIMIT_THRESHOLD:
                if await self._claim(tenant_id, WARNING_THRESHOLD, billing_cycle_start):
                    logger.info(
                        f"Tenant {tenant_id} reached {WARNING_THRESHOLD}% usage "
                        f"({current_usage}/{limit}, {percentage:.2f}%)"
                    )
                    await self.raise_threshold_event(tenant_id, WARNING_THRESHOLD, {
                        "current_usage": current_usage,
                        "limit": limit,
                        "percentage": round(percentage, 2),
                        "billing_cycle_start": cycle,
                    })
                    raised.append(threshold_event(WARNING_THRESHOLD))

            if percentage >= LIMIT_THRESHOLD:
                if await self._claim(tenant_id, LIMIT_THRESHOLD, billing_cycle_start):
                    logger.warning(
                        f"Tenant {tenant_id} reached {LIMIT_THRESHOLD}% usage "
                        f"({current_usage}/{limit}, {percentage:.2f}%)"
                    )
                    await self.raise_threshold_event(tenant_id, LIMIT_THRESHOLD, {
                        "current_usage": current_usage,
                        "limit": limit,
                        "percentage": round(percentage, 2),
                        "billing_cycle_start": cycle,
                    })
                    raised.append(threshold_event(LIMIT_THRESHOLD))

                    if current_usage > limit:
                        await self.raise_quota_exceeded_event(tenant_id, {
                            "current_usage": current_usage,
                            "limit": limit,
                            "overage": current_usage - limit,
                            "billing_cycle_start": cycle,
                        })
                        raised.append(QUOTA_EXCEEDED_EVENT)
        except Exception as e:
            logger.error(f"Error in usage threshold monitor for tenant={tenant_id}: {e}")

        return raised

    async def _claim(self, tenant_id: str, threshold: int, billing_cycle_start: date) -> bool:
        """True only for the caller that records the marker for this cycle."""
        async with self._session_factory() as db:
            notifications = UsageNotificationService(db)
            if await notifications.has_notified(tenant_id, threshold, billing_cycle_start):
                return False
            return await notifications.mark_notified(tenant_id, threshold, billing_cycle_start)

    async def raise_threshold_event(self, tenant_id: str, threshold: int, usage_data: dict) -> list[str]:
        payload = build_threshold_payload(tenant_id, threshold, usage_data)
        return await self.queue.enqueue(tenant_id, payload["event"], payload)

    async def raise_quota_exceeded_event(self, tenant_id: str, usage_data: dict) -> list[str]:
        payload = build_quota_exceeded_payload(tenant_id, usage_data)
        return await self.queue.enqueue(tenant_id, QUOTA_EXCEEDED_EVENT, payload)
