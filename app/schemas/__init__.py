"""Pydantic schemas for API request/response."""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator

from app.models import parse_json_field


# ── Webhook configs ──────────────────────────────────────
class WebhookConfigCreate(BaseModel):
    tenant_id: Optional[str] = None  # admins only; defaults to the caller's tenant
    url: str
    events: Optional[list[str]] = Field(None, min_length=1)
    custom_headers: Optional[dict[str, str]] = None
    timeout_ms: Optional[int] = Field(None, ge=1000, le=30000)


class WebhookConfigUpdate(BaseModel):
    url: Optional[str] = None
    enabled: Optional[bool] = None
    events: Optional[list[str]] = Field(None, min_length=1)
    custom_headers: Optional[dict[str, str]] = None
    timeout_ms: Optional[int] = Field(None, ge=1000, le=30000)

    @model_validator(mode="after")
    def _not_empty(self):
        if not self.model_fields_set:
            raise ValueError("At least one field must be provided for update")
        return self


class WebhookConfigOut(BaseModel):
    id: str
    tenant_id: str
    url: str
    enabled: bool
    events: list[str]
    custom_headers: Optional[dict[str, str]] = None
    timeout_ms: int
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    @classmethod
    def fields_from_model(cls, config) -> dict:
        events = parse_json_field(config.events, [])
        return dict(
            id=config.id,
            tenant_id=config.tenant_id,
            url=config.url,
            enabled=bool(config.enabled),
            events=events if isinstance(events, list) else [],
            custom_headers=parse_json_field(config.custom_headers, None),
            timeout_ms=config.timeout_ms,
            created_by=config.created_by,
            created_at=config.created_at,
            updated_at=config.updated_at,
        )

    @classmethod
    def from_model(cls, config):
        return cls(**cls.fields_from_model(config))


class WebhookConfigCreated(WebhookConfigOut):
    """Only returned by registration: the one time the secret is shown."""

    secret: str
    warning: str = "Save this secret securely. It will not be shown again."

    @classmethod
    def from_model(cls, config):
        return cls(secret=config.secret, **cls.fields_from_model(config))


class SecretRotated(BaseModel):
    id: str
    secret: str
    warning: str = "Save this secret securely. It will not be shown again."


# ── Deliveries ───────────────────────────────────────────
class DeliveryOut(BaseModel):
    id: str
    webhook_config_id: str
    tenant_id: str
    event_type: str
    payload: dict
    status: str
    attempt_count: int
    max_attempts: int
    last_response_status: Optional[int] = None
    last_response_body: Optional[str] = None
    last_error: Optional[str] = None
    duration_ms: Optional[int] = None
    next_retry_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, delivery):
        payload = parse_json_field(delivery.payload, {})
        return cls(
            id=delivery.id,
            webhook_config_id=delivery.webhook_config_id,
            tenant_id=delivery.tenant_id,
            event_type=delivery.event_type,
            payload=payload if isinstance(payload, dict) else {},
            status=delivery.status,
            attempt_count=delivery.attempt_count or 0,
            max_attempts=delivery.max_attempts,
            last_response_status=delivery.last_response_status,
            last_response_body=delivery.last_response_body,
            last_error=delivery.last_error,
            duration_ms=delivery.duration_ms,
            next_retry_at=delivery.next_retry_at,
            delivered_at=delivery.delivered_at,
            created_at=delivery.created_at,
            updated_at=delivery.updated_at,
        )


# ── Testing / simulation ─────────────────────────────────
class WebhookTestRequest(BaseModel):
    url: str
    payload: Optional[dict] = None


class WebhookTestResponse(BaseModel):
    status_code: int
    response_body: str = ""
    secret_used: str
    headers_sent: dict[str, str]


class SimulateThresholdRequest(BaseModel):
    tenant_id: str
    threshold: Literal[80, 100]


class QueueStatus(BaseModel):
    running: bool
    queue_size: int
    monitor_pending: int = 0
