"""Webhook delivery queue — signed HTTP delivery with durable retries.

Delivery state lives in ``webhook_deliveries``; the in-memory deque only
holds ids of freshly created deliveries so they go out without waiting for
the next scan. A restart loses nothing: pending rows are picked up by the
periodic scan.

State machine per delivery::

    pending  --attempt--> success | retrying | failed
    retrying --attempt--> success | retrying | failed
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import get_settings
from app.models import DeliveryStatus, WebhookDelivery, parse_json_field, utcnow
from app.services.webhook_configs import WebhookConfigService, config_headers
from app.services.webhook_deliveries import DeliveryStateError, WebhookDeliveryService
from app.services.webhook_signer import build_signature_headers, generate_secret, serialize_payload

logger = logging.getLogger(__name__)

# Delay before attempt n+1, indexed by the number of attempts made so far
RETRY_BACKOFF_SECONDS = (1, 5, 15)


def backoff_delay(attempt: int) -> timedelta:
    index = min(max(attempt, 1), len(RETRY_BACKOFF_SECONDS)) - 1
    return timedelta(seconds=RETRY_BACKOFF_SECONDS[index])


@dataclass
class WebhookSendResult:
    success: bool
    status_code: Optional[int] = None
    response_body: Optional[str] = None
    error: Optional[str] = None
    duration_ms: int = 0


@dataclass
class SendTestResult:
    delivered: bool
    secret_used: str
    headers_sent: dict[str, str] = field(default_factory=dict)
    status_code: Optional[int] = None
    response_body: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class _Target:
    """Snapshot of the config fields needed for one attempt."""

    url: str
    secret: str
    timeout_ms: int
    custom_headers: dict[str, str]


def default_test_payload() -> dict:
    return {
        "event": "test.webhook",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "message": "This is a test webhook",
    }


class WebhookQueue:
    """Owns the scanner task and the in-memory list of deliveries to send now."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        interval: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        settings = get_settings()
        self._session_factory = session_factory
        self.interval = interval if interval is not None else settings.webhook_scan_interval_seconds
        self._transport = transport
        self._clock = clock or utcnow
        self._pending: deque[str] = deque()
        self._lock = asyncio.Lock()
        self._scanner: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._kicks: set[asyncio.Task] = set()

    # ── Lifecycle ────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._scanner is not None and not self._scanner.done()

    def start(self):
        if self.running:
            logger.warning("Webhook queue already running")
            return
        self._stop_event = asyncio.Event()
        self._scanner = asyncio.create_task(self._run(), name="webhook-queue-scanner")
        logger.info(f"Webhook queue started (scan every {self.interval}s)")

    async def stop(self):
        """Stop scanning; an in-flight scan is allowed to finish first."""
        if self._scanner is None:
            return
        self._stop_event.set()
        await self._scanner
        self._scanner = None
        if self._kicks:
            await asyncio.gather(*self._kicks, return_exceptions=True)
        logger.info("Webhook queue stopped")

    async def _run(self):
        while not self._stop_event.is_set():
            await self.process_queue()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    def _kick(self):
        task = asyncio.create_task(self.process_queue())
        self._kicks.add(task)
        task.add_done_callback(self._kicks.discard)

    def get_status(self) -> dict:
        return {"running": self.running, "queue_size": len(self._pending)}

    # ── Enqueue ──────────────────────────────────────────

    async def enqueue(self, tenant_id: str, event_type: str, payload: dict) -> list[str]:
        """Create one delivery per subscribed endpoint and schedule it right away.

        Never raises; returns the ids of the deliveries created.
        """
        created: list[str] = []
        try:
            async with self._session_factory() as db:
                configs = await WebhookConfigService(db).list_active_for_event(tenant_id, event_type)
                if not configs:
                    logger.debug(f"No active webhook configs: tenant={tenant_id} event={event_type}")
                    return created

                deliveries = WebhookDeliveryService(db)
                for config in configs:
                    delivery = await deliveries.create_delivery(config.id, tenant_id, event_type, payload)
                    self._pending.append(delivery.id)
                    created.append(delivery.id)
                    logger.info(f"Webhook enqueued: delivery={delivery.id} event={event_type} url={config.url}")
        except Exception as e:
            logger.error(f"Error enqueuing webhook for tenant={tenant_id} event={event_type}: {e}")

        if created and self.running:
            self._kick()
        return created

    # ── Scanning ─────────────────────────────────────────

    async def process_queue(self) -> int:
        """Run one scan unless one is already running. Returns deliveries attempted."""
        if self._lock.locked():
            return 0
        async with self._lock:
            attempted: set[str] = set()
            try:
                await self._drain(attempted)
                await self._process_retries(attempted)
                await self._drain(attempted)
            except Exception as e:
                logger.error(f"Error processing webhook queue: {e}")
            return len(attempted)

    async def _drain(self, attempted: set[str]):
        while self._pending:
            delivery_id = self._pending.popleft()
            if delivery_id in attempted:
                continue
            attempted.add(delivery_id)
            await self.process_delivery(delivery_id)

    async def _process_retries(self, attempted: set[str]):
        async with self._session_factory() as db:
            due = await WebhookDeliveryService(db).get_pending_retries(now=self._clock())
            due_ids = [d.id for d in due]

        for delivery_id in due_ids:
            if delivery_id in attempted:
                continue
            attempted.add(delivery_id)
            await self.process_delivery(delivery_id)

    # ── Single delivery ──────────────────────────────────

    async def process_delivery(self, delivery_id: str) -> Optional[WebhookDelivery]:
        """Make one attempt for ``delivery_id`` and record the outcome."""
        try:
            async with self._session_factory() as db:
                deliveries = WebhookDeliveryService(db)
                delivery = await deliveries.get_delivery(delivery_id)
                if delivery is None:
                    logger.warning(f"Webhook delivery not found: {delivery_id}")
                    return None
                if delivery.is_terminal:
                    return delivery

                # Always the current config, so a rotated secret applies immediately
                config = await WebhookConfigService(db).get(delivery.webhook_config_id)
                if config is None:
                    logger.error(f"Webhook config gone, abandoning delivery {delivery_id}")
                    return await deliveries.mark_abandoned(delivery, "Webhook configuration not found")
                if not config.enabled:
                    logger.info(f"Webhook config {config.id} disabled, skipping delivery {delivery_id}")
                    return delivery

                target = _Target(
                    url=config.url,
                    secret=config.secret,
                    timeout_ms=config.timeout_ms or get_settings().webhook_default_timeout_ms,
                    custom_headers=config_headers(config),
                )
                payload = parse_json_field(delivery.payload, {})
                attempt = delivery.attempt_count + 1

            logger.info(f"Processing webhook: delivery={delivery_id} url={target.url} attempt={attempt}")
            result = await self.send(target, payload)

            async with self._session_factory() as db:
                deliveries = WebhookDeliveryService(db)
                delivery = await deliveries.get_delivery(delivery_id)
                now = self._clock()
                if result.success:
                    await deliveries.mark_success(
                        delivery,
                        response_status=result.status_code,
                        response_body=result.response_body,
                        duration_ms=result.duration_ms,
                        now=now,
                    )
                    logger.info(
                        f"Webhook delivered: delivery={delivery_id} status={result.status_code} "
                        f"duration={result.duration_ms}ms"
                    )
                else:
                    await deliveries.mark_attempt_failed(
                        delivery,
                        error=result.error or "Unknown error",
                        next_retry_at_for=lambda n: now + backoff_delay(n),
                        response_status=result.status_code,
                        response_body=result.response_body,
                        duration_ms=result.duration_ms,
                        now=now,
                    )
                    if delivery.status == DeliveryStatus.RETRYING.value:
                        logger.warning(
                            f"Webhook failed, will retry: delivery={delivery_id} "
                            f"attempt={delivery.attempt_count}/{delivery.max_attempts} "
                            f"next_retry_at={delivery.next_retry_at} error={result.error}"
                        )
                    else:
                        logger.error(f"Webhook failed permanently: delivery={delivery_id} error={result.error}")
                return delivery
        except DeliveryStateError as e:
            logger.warning(str(e))
            return None
        except Exception as e:
            logger.error(f"Error processing webhook delivery {delivery_id}: {e}")
            return None

    async def send(self, target: _Target, payload: Any) -> WebhookSendResult:
        """POST the signed payload once. Transport errors become a failed result."""
        settings = get_settings()
        headers = {
            "Content-Type": "application/json",
            "User-Agent": settings.webhook_user_agent,
            **build_signature_headers(payload, target.secret),
            **target.custom_headers,
        }
        body = serialize_payload(payload)

        start = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=target.timeout_ms / 1000, transport=self._transport) as client:
                resp = await client.post(target.url, content=body, headers=headers)
        except httpx.TimeoutException:
            return WebhookSendResult(
                success=False,
                error=f"Timeout after {target.timeout_ms}ms",
                duration_ms=int((time.monotonic() - start) * 1000),
            )
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            return WebhookSendResult(
                success=False,
                error=str(exc) or exc.__class__.__name__,
                duration_ms=int((time.monotonic() - start) * 1000),
            )

        success = 200 <= resp.status_code < 300
        return WebhookSendResult(
            success=success,
            status_code=resp.status_code,
            response_body=resp.text[: settings.webhook_response_body_limit],
            error=None if success else f"HTTP {resp.status_code}",
            duration_ms=int((time.monotonic() - start) * 1000),
        )

    # ── One-off test sends ───────────────────────────────

    async def send_test(
        self, url: str, payload: Optional[dict] = None, secret: Optional[str] = None
    ) -> SendTestResult:
        """Sign and send a one-off payload; nothing is stored or looked up."""
        settings = get_settings()
        secret = secret or generate_secret()
        if payload is None:
            payload = default_test_payload()
        signature_headers = build_signature_headers(payload, secret)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": f"{settings.webhook_user_agent} (test)",
            **signature_headers,
        }

        try:
            async with httpx.AsyncClient(
                timeout=settings.webhook_test_timeout_ms / 1000, transport=self._transport
            ) as client:
                resp = await client.post(url, content=serialize_payload(payload), headers=headers)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.info(f"Test webhook to {url} failed: {exc}")
            return SendTestResult(
                delivered=False,
                secret_used=secret,
                headers_sent=signature_headers,
                error=str(exc) or exc.__class__.__name__,
            )

        return SendTestResult(
            delivered=200 <= resp.status_code < 300,
            secret_used=secret,
            headers_sent=signature_headers,
            status_code=resp.status_code,
            response_body=resp.text[: settings.webhook_test_response_limit],
        )
