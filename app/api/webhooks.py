"""Webhook management API — endpoint configs, delivery history, test sends."""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.auth import (
    Principal,
    ensure_tenant_access,
    get_current_principal,
    require_admin,
    resolve_tenant,
)
from app.database import get_db
from app.models import DeliveryStatus
from app.schemas import (
    DeliveryOut,
    QueueStatus,
    SecretRotated,
    SimulateThresholdRequest,
    WebhookConfigCreate,
    WebhookConfigCreated,
    WebhookConfigOut,
    WebhookConfigUpdate,
    WebhookTestRequest,
    WebhookTestResponse,
)
from app.services.usage_monitor import UsageThresholdMonitor
from app.services.webhook_configs import (
    WEBHOOK_EVENTS,
    WebhookConfigError,
    WebhookConfigService,
    validate_url,
)
from app.services.webhook_deliveries import DEFAULT_LIST_LIMIT, WebhookDeliveryService
from app.services.webhook_queue import WebhookQueue

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def get_webhook_queue(request: Request) -> WebhookQueue:
    return request.app.state.webhook_queue


def get_usage_monitor(request: Request) -> UsageThresholdMonitor:
    return request.app.state.usage_monitor


async def _get_owned_config(config_id: str, principal: Principal, db: AsyncSession):
    config = await WebhookConfigService(db).get(config_id)
    if not config:
        raise HTTPException(404, "Webhook configuration not found")
    ensure_tenant_access(principal, config.tenant_id)
    return config


# ── Event types ──────────────────────────────────────────
@router.get("/events", response_model=list[str])
async def list_event_types():
    """List all subscribable webhook event types."""
    return WEBHOOK_EVENTS


# ── Deliveries ───────────────────────────────────────────
@router.get("/deliveries", response_model=list[DeliveryOut])
async def list_deliveries(
    tenant_id: Optional[str] = None,
    status: Optional[DeliveryStatus] = None,
    event_type: Optional[str] = None,
    limit: int = Query(DEFAULT_LIST_LIMIT),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """Delivery history, newest first. ``limit`` is clamped to 1..1000."""
    target = resolve_tenant(principal, tenant_id)
    deliveries = await WebhookDeliveryService(db).list_for_tenant(
        target,
        status=status.value if status else None,
        event_type=event_type,
        limit=limit,
    )
    return [DeliveryOut.from_model(d) for d in deliveries]


@router.get("/deliveries/{delivery_id}", response_model=DeliveryOut)
async def get_delivery(
    delivery_id: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    delivery = await WebhookDeliveryService(db).get_delivery(delivery_id)
    if not delivery:
        raise HTTPException(404, "Webhook delivery not found")
    ensure_tenant_access(principal, delivery.tenant_id)
    return DeliveryOut.from_model(delivery)


# ── Testing ──────────────────────────────────────────────
@router.post("/test", response_model=WebhookTestResponse)
async def send_test_webhook(
    data: WebhookTestRequest,
    principal: Principal = Depends(get_current_principal),
    queue: WebhookQueue = Depends(get_webhook_queue),
):
    """Send a signed one-off payload with a throwaway secret."""
    try:
        url = validate_url(data.url)
    except WebhookConfigError as e:
        raise HTTPException(400, str(e))

    result = await queue.send_test(url, data.payload)
    if result.error:
        raise HTTPException(400, {"message": "Failed to send test webhook", "error": result.error})
    return WebhookTestResponse(
        status_code=result.status_code,
        response_body=result.response_body or "",
        secret_used=result.secret_used,
        headers_sent=result.headers_sent,
    )


@router.post("/simulate-threshold")
async def simulate_threshold(
    data: SimulateThresholdRequest,
    principal: Principal = Depends(require_admin),
    monitor: UsageThresholdMonitor = Depends(get_usage_monitor),
):
    """Enqueue a threshold event with mock usage figures (admin only, not dedup-gated)."""
    mock_usage = {
        "current_usage": 8000 if data.threshold == 80 else 10000,
        "limit": 10000,
        "percentage": data.threshold,
        "billing_cycle_start": datetime.now(timezone.utc).date().isoformat(),
    }
    delivery_ids = await monitor.raise_threshold_event(data.tenant_id, data.threshold, mock_usage)
    return {
        "message": f"Simulated {data.threshold}% threshold webhook for tenant {data.tenant_id}",
        "tenant_id": data.tenant_id,
        "threshold": data.threshold,
        "mock_data": mock_usage,
        "delivery_ids": delivery_ids,
    }


@router.get("/queue/status", response_model=QueueStatus)
async def queue_status(
    principal: Principal = Depends(require_admin),
    queue: WebhookQueue = Depends(get_webhook_queue),
    monitor: UsageThresholdMonitor = Depends(get_usage_monitor),
):
    return QueueStatus(**queue.get_status(), monitor_pending=monitor.pending)


# ── Configs ──────────────────────────────────────────────
@router.post("/", response_model=WebhookConfigCreated, status_code=201)
async def create_webhook(
    data: WebhookConfigCreate,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """Register an endpoint. The signing secret is only ever returned here."""
    tenant_id = resolve_tenant(principal, data.tenant_id)
    try:
        config = await WebhookConfigService(db).create(
            tenant_id=tenant_id,
            url=data.url,
            events=data.events,
            custom_headers=data.custom_headers,
            timeout_ms=data.timeout_ms,
            created_by=principal.subject,
        )
    except WebhookConfigError as e:
        raise HTTPException(400, str(e))
    return WebhookConfigCreated.from_model(config)


@router.get("/", response_model=list[WebhookConfigOut])
async def list_webhooks(
    tenant_id: Optional[str] = None,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    target = resolve_tenant(principal, tenant_id)
    configs = await WebhookConfigService(db).list_for_tenant(target)
    return [WebhookConfigOut.from_model(c) for c in configs]


@router.get("/{webhook_id}", response_model=WebhookConfigOut)
async def get_webhook(
    webhook_id: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    config = await _get_owned_config(webhook_id, principal, db)
    return WebhookConfigOut.from_model(config)


@router.patch("/{webhook_id}", response_model=WebhookConfigOut)
async def update_webhook(
    webhook_id: str,
    data: WebhookConfigUpdate,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    await _get_owned_config(webhook_id, principal, db)
    try:
        config = await WebhookConfigService(db).update(webhook_id, **data.model_dump(exclude_unset=True))
    except WebhookConfigError as e:
        raise HTTPException(400, str(e))
    if not config:
        raise HTTPException(404, "Webhook configuration not found")
    return WebhookConfigOut.from_model(config)


@router.delete("/{webhook_id}", status_code=204)
async def delete_webhook(
    webhook_id: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    await _get_owned_config(webhook_id, principal, db)
    await WebhookConfigService(db).delete(webhook_id)


@router.post("/{webhook_id}/rotate-secret", response_model=SecretRotated)
async def rotate_webhook_secret(
    webhook_id: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    await _get_owned_config(webhook_id, principal, db)
    secret = await WebhookConfigService(db).rotate_secret(webhook_id)
    if secret is None:
        raise HTTPException(404, "Webhook configuration not found")
    return SecretRotated(id=webhook_id, secret=secret)
