"""Webhook models: endpoint configs, delivery log and usage notification markers."""

from enum import Enum

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from app.database import Base
from app.models import new_uuid, utcnow


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    RETRYING = "retrying"
    SUCCESS = "success"
    FAILED = "failed"


TERMINAL_STATUSES = (DeliveryStatus.SUCCESS.value, DeliveryStatus.FAILED.value)
DUE_STATUSES = (DeliveryStatus.PENDING.value, DeliveryStatus.RETRYING.value)


class WebhookConfig(Base):
    """Tenant-registered endpoint that receives usage notifications."""

    __tablename__ = "webhook_configs"
    __table_args__ = (Index("ix_webhook_configs_tenant_enabled", "tenant_id", "enabled"),)

    id = Column(String(36), primary_key=True, default=new_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)
    url = Column(String(2048), nullable=False)
    secret = Column(String(64), nullable=False)  # HMAC signing secret, hex
    enabled = Column(Boolean, default=True)
    events = Column(Text, default="[]")  # JSON list of subscribed event types
    custom_headers = Column(Text, nullable=True)  # JSON object, insertion order kept
    timeout_ms = Column(Integer, default=5000)
    created_by = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class WebhookDelivery(Base):
    """One event delivered (or being delivered) to one endpoint config."""

    __tablename__ = "webhook_deliveries"
    __table_args__ = (
        Index("ix_webhook_deliveries_status_retry", "status", "next_retry_at"),
        Index("ix_webhook_deliveries_tenant_event", "tenant_id", "event_type"),
    )

    id = Column(String(36), primary_key=True, default=new_uuid)
    # No FK cascade: delivery rows outlive their config as an audit trail
    webhook_config_id = Column(String(36), nullable=False, index=True)
    tenant_id = Column(String(36), nullable=False)
    event_type = Column(String(50), nullable=False)
    payload = Column(Text, default="{}")
    status = Column(String(20), default=DeliveryStatus.PENDING.value)
    attempt_count = Column(Integer, default=0)
    max_attempts = Column(Integer, default=3)
    last_response_status = Column(Integer, nullable=True)
    last_response_body = Column(Text, nullable=True)
    last_error = Column(Text, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class UsageNotification(Base):
    """Marker that a tenant was notified for a threshold within a billing cycle."""

    __tablename__ = "usage_notifications"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "threshold", "billing_cycle_start", name="uq_usage_notification"
        ),
    )

    id = Column(String(36), primary_key=True, default=new_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)
    threshold = Column(Integer, nullable=False)
    billing_cycle_start = Column(Date, nullable=False)
    notified_at = Column(DateTime(timezone=True), default=utcnow)
