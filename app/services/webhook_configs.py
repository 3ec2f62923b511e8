"""Webhook endpoint configuration store — per-tenant delivery targets."""

import json
import logging
from typing import Optional
from urllib.parse import urlsplit

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.models import WebhookConfig, parse_json_field, utcnow
from app.services.webhook_signer import generate_secret

logger = logging.getLogger(__name__)

WEBHOOK_EVENTS = [
    "usage.threshold.80",
    "usage.threshold.100",
    "usage.quota.exceeded",
    "usage.reset",
]
DEFAULT_EVENTS = ["usage.threshold.80", "usage.threshold.100"]

RESERVED_HEADERS = {
    "content-type",
    "user-agent",
    "x-webhook-timestamp",
    "x-webhook-signature",
    "x-webhook-signature-version",
}

MIN_TIMEOUT_MS = 1000
MAX_TIMEOUT_MS = 30000

UPDATABLE_FIELDS = ("url", "enabled", "events", "custom_headers", "timeout_ms")


class WebhookConfigError(ValueError):
    """Rejected endpoint configuration (bad URL, unknown event, ...)."""


def validate_url(url: str) -> str:
    settings = get_settings()
    if not isinstance(url, str) or not url.strip():
        raise WebhookConfigError("Webhook URL is required")
    url = url.strip()
    try:
        parts = urlsplit(url)
        host = parts.hostname
    except ValueError as exc:
        raise WebhookConfigError(f"Invalid URL format: {exc}") from exc
    if parts.scheme not in ("http", "https") or not host:
        raise WebhookConfigError("Webhook URL must be an absolute http(s) URL")
    if settings.is_production:
        if parts.scheme != "https":
            raise WebhookConfigError("Webhook URL must use HTTPS in production")
        if host in ("localhost", "127.0.0.1"):
            raise WebhookConfigError("Localhost URLs are not allowed in production")
    return url


def validate_events(events: list[str]) -> list[str]:
    if not events:
        raise WebhookConfigError("At least one event is required")
    for evt in events:
        if evt not in WEBHOOK_EVENTS:
            raise WebhookConfigError(f"Invalid event type: {evt}")
    # keep order, drop repeats
    return list(dict.fromkeys(events))


def validate_custom_headers(headers: Optional[dict]) -> Optional[dict]:
    if headers is None:
        return None
    for key, value in headers.items():
        if not isinstance(key, str) or not isinstance(value, str):
            raise WebhookConfigError("Custom headers must map strings to strings")
        if key.lower() in RESERVED_HEADERS:
            raise WebhookConfigError(f"Cannot override system header: {key}")
    return dict(headers)


def validate_timeout(timeout_ms: int) -> int:
    if isinstance(timeout_ms, bool) or not isinstance(timeout_ms, int):
        raise WebhookConfigError("Timeout must be an integer")
    if not MIN_TIMEOUT_MS <= timeout_ms <= MAX_TIMEOUT_MS:
        raise WebhookConfigError(
            f"Timeout must be between {MIN_TIMEOUT_MS} and {MAX_TIMEOUT_MS} ms"
        )
    return timeout_ms


def config_events(config: WebhookConfig) -> list[str]:
    events = parse_json_field(config.events, [])
    return events if isinstance(events, list) else []


def config_headers(config: WebhookConfig) -> dict[str, str]:
    headers = parse_json_field(config.custom_headers, {})
    return headers if isinstance(headers, dict) else {}


class WebhookConfigService:
    """CRUD over ``webhook_configs``. Tenant scoping is enforced by callers."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(
        self,
        tenant_id: str,
        url: str,
        events: Optional[list[str]] = None,
        custom_headers: Optional[dict] = None,
        timeout_ms: Optional[int] = None,
        created_by: Optional[str] = None,
    ) -> WebhookConfig:
        """Register an endpoint. The returned row carries the freshly generated secret."""
        headers = validate_custom_headers(custom_headers)
        config = WebhookConfig(
            tenant_id=tenant_id,
            url=validate_url(url),
            secret=generate_secret(),
            events=json.dumps(validate_events(events if events is not None else DEFAULT_EVENTS)),
            custom_headers=json.dumps(headers) if headers is not None else None,
            timeout_ms=validate_timeout(
                timeout_ms if timeout_ms is not None else get_settings().webhook_default_timeout_ms
            ),
            created_by=created_by,
        )
        self.db.add(config)
        await self.db.commit()
        await self.db.refresh(config)
        logger.info(f"Webhook config created: id={config.id} tenant={tenant_id}")
        return config

    async def get(self, config_id: str) -> Optional[WebhookConfig]:
        result = await self.db.execute(select(WebhookConfig).where(WebhookConfig.id == config_id))
        return result.scalar_one_or_none()

    async def list_for_tenant(self, tenant_id: str) -> list[WebhookConfig]:
        result = await self.db.execute(
            select(WebhookConfig)
            .where(WebhookConfig.tenant_id == tenant_id)
            .order_by(WebhookConfig.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_active_for_event(self, tenant_id: str, event_type: str) -> list[WebhookConfig]:
        """Enabled configs of ``tenant_id`` subscribed to ``event_type``."""
        result = await self.db.execute(
            select(WebhookConfig)
            .where(
                WebhookConfig.tenant_id == tenant_id,
                WebhookConfig.enabled.is_(True),
            )
            .order_by(WebhookConfig.created_at.asc())
        )
        return [cfg for cfg in result.scalars().all() if event_type in config_events(cfg)]

    async def update(self, config_id: str, **fields) -> Optional[WebhookConfig]:
        """Partial update; unknown fields are rejected, the secret is never touched."""
        config = await self.get(config_id)
        if config is None:
            return None

        unknown = set(fields) - set(UPDATABLE_FIELDS)
        if unknown:
            raise WebhookConfigError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        if "url" in fields:
            config.url = validate_url(fields["url"])
        if "enabled" in fields:
            if not isinstance(fields["enabled"], bool):
                raise WebhookConfigError("enabled must be a boolean")
            config.enabled = fields["enabled"]
        if "events" in fields:
            config.events = json.dumps(validate_events(fields["events"]))
        if "custom_headers" in fields:
            headers = validate_custom_headers(fields["custom_headers"])
            config.custom_headers = json.dumps(headers) if headers is not None else None
        if "timeout_ms" in fields:
            config.timeout_ms = validate_timeout(fields["timeout_ms"])

        if fields:
            config.updated_at = utcnow()
            await self.db.commit()
            await self.db.refresh(config)
            logger.info(f"Webhook config updated: id={config_id} fields={sorted(fields)}")
        return config

    async def rotate_secret(self, config_id: str) -> Optional[str]:
        """Replace the signing secret; the previous one stops being used at once."""
        config = await self.get(config_id)
        if config is None:
            return None
        config.secret = generate_secret()
        config.updated_at = utcnow()
        await self.db.commit()
        logger.info(f"Webhook secret rotated: id={config_id}")
        return config.secret

    async def delete(self, config_id: str) -> bool:
        config = await self.get(config_id)
        if config is None:
            return False
        await self.db.delete(config)
        await self.db.commit()
        logger.info(f"Webhook config deleted: id={config_id}")
        return True
