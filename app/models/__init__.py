"""SQLAlchemy models — portable across SQLite and PostgreSQL."""

import json
import uuid
from datetime import datetime, timezone


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


def parse_json_field(value, default):
    """Decode a JSON-as-text column, falling back to ``default`` on bad data."""
    if value is None:
        return default
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return default


from app.models.webhook import (  # noqa: E402
    DeliveryStatus,
    UsageNotification,
    WebhookConfig,
    WebhookDelivery,
)

__all__ = [
    "DeliveryStatus",
    "UsageNotification",
    "WebhookConfig",
    "WebhookDelivery",
    "new_uuid",
    "parse_json_field",
    "utcnow",
]
