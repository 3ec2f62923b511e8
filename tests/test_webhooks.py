"""Tests for the webhook management API."""

import json

import pytest

from app.database import async_session
from app.main import app
from app.models import WebhookConfig, WebhookDelivery
from app.services.webhook_deliveries import WebhookDeliveryService
from app.services.webhook_queue import WebhookQueue
from app.services.webhook_signer import verify
from conftest import Receiver

BASE = "/api/v1/webhooks"


# ── Model tests ──────────────────────────────────────────
def test_webhook_config_defaults():
    cfg = WebhookConfig(tenant_id="t", url="https://example.com/hook", secret="s")
    assert cfg.enabled is True
    assert cfg.timeout_ms == 5000
    assert cfg.id is not None


def test_webhook_delivery_defaults():
    d = WebhookDelivery(webhook_config_id="cfg", tenant_id="t", event_type="usage.threshold.80", payload="{}")
    assert d.status == "pending"
    assert d.attempt_count == 0
    assert d.max_attempts == 3
    assert d.is_terminal is False
    d.status = "failed"
    assert d.is_terminal is True


# ── Auth ─────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_requires_bearer_token(client):
    resp = await client.get(f"{BASE}/")
    assert resp.status_code in (401, 403)


@pytest.mark.asyncio
async def test_rejects_invalid_token(client):
    resp = await client.get(f"{BASE}/", headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_list_events(client, tenant_headers):
    resp = await client.get(f"{BASE}/events", headers=tenant_headers)
    assert resp.status_code == 200
    assert "usage.threshold.80" in resp.json()
    assert "usage.quota.exceeded" in resp.json()


# ── Config CRUD ──────────────────────────────────────────
@pytest.mark.asyncio
async def test_create_returns_secret_once(client, tenant_headers):
    resp = await client.post(
        f"{BASE}/", json={"url": "https://hooks.example.com/usage"}, headers=tenant_headers
    )
    assert resp.status_code == 201
    data = resp.json()
    assert data["tenant_id"] == "tenant-a"
    assert data["events"] == ["usage.threshold.80", "usage.threshold.100"]
    assert data["created_by"] == "user-a"
    assert len(data["secret"]) == 64
    assert "warning" in data

    listed = await client.get(f"{BASE}/", headers=tenant_headers)
    assert [c["id"] for c in listed.json()] == [data["id"]]
    assert "secret" not in listed.json()[0]

    single = await client.get(f"{BASE}/{data['id']}", headers=tenant_headers)
    assert single.status_code == 200
    assert "secret" not in single.json()


@pytest.mark.asyncio
async def test_create_rejects_unknown_event(client, tenant_headers):
    resp = await client.post(
        f"{BASE}/",
        json={"url": "https://hooks.example.com/usage", "events": ["contact.created"]},
        headers=tenant_headers,
    )
    assert resp.status_code == 400
    assert "Invalid event type" in resp.json()["detail"]


@pytest.mark.asyncio
async def test_create_rejects_bad_url(client, tenant_headers):
    resp = await client.post(f"{BASE}/", json={"url": "not a url"}, headers=tenant_headers)
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_create_rejects_timeout_out_of_range(client, tenant_headers):
    resp = await client.post(
        f"{BASE}/", json={"url": "https://hooks.example.com/usage", "timeout_ms": 60000}, headers=tenant_headers
    )
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_create_for_other_tenant_forbidden(client, tenant_headers):
    resp = await client.post(
        f"{BASE}/", json={"tenant_id": "tenant-b", "url": "https://hooks.example.com/usage"}, headers=tenant_headers
    )
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_admin_must_name_tenant(client, admin_headers):
    resp = await client.post(f"{BASE}/", json={"url": "https://hooks.example.com/usage"}, headers=admin_headers)
    assert resp.status_code == 400

    resp = await client.post(
        f"{BASE}/", json={"tenant_id": "tenant-b", "url": "https://hooks.example.com/usage"}, headers=admin_headers
    )
    assert resp.status_code == 201
    assert resp.json()["tenant_id"] == "tenant-b"


@pytest.mark.asyncio
async def test_other_tenant_cannot_see_config(client, tenant_headers, other_tenant_headers):
    created = await client.post(f"{BASE}/", json={"url": "https://hooks.example.com/a"}, headers=tenant_headers)
    webhook_id = created.json()["id"]

    assert (await client.get(f"{BASE}/{webhook_id}", headers=other_tenant_headers)).status_code == 403
    assert (await client.delete(f"{BASE}/{webhook_id}", headers=other_tenant_headers)).status_code == 403
    assert (await client.get(f"{BASE}/", headers=other_tenant_headers)).json() == []


@pytest.mark.asyncio
async def test_get_missing_config(client, tenant_headers):
    resp = await client.get(f"{BASE}/nonexistent-id", headers=tenant_headers)
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_update_config(client, tenant_headers):
    created = await client.post(
        f"{BASE}/",
        json={"url": "https://hooks.example.com/a", "custom_headers": {"X-Env": "prod"}},
        headers=tenant_headers,
    )
    webhook_id = created.json()["id"]

    resp = await client.patch(
        f"{BASE}/{webhook_id}",
        json={"enabled": False, "events": ["usage.quota.exceeded"], "custom_headers": None},
        headers=tenant_headers,
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["enabled"] is False
    assert data["events"] == ["usage.quota.exceeded"]
    assert data["custom_headers"] is None
    assert data["url"] == "https://hooks.example.com/a"


@pytest.mark.asyncio
async def test_update_requires_a_field(client, tenant_headers):
    created = await client.post(f"{BASE}/", json={"url": "https://hooks.example.com/a"}, headers=tenant_headers)
    resp = await client.patch(f"{BASE}/{created.json()['id']}", json={}, headers=tenant_headers)
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_update_rejects_reserved_header(client, tenant_headers):
    created = await client.post(f"{BASE}/", json={"url": "https://hooks.example.com/a"}, headers=tenant_headers)
    resp = await client.patch(
        f"{BASE}/{created.json()['id']}",
        json={"custom_headers": {"X-Webhook-Signature": "forged"}},
        headers=tenant_headers,
    )
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_rotate_secret(client, tenant_headers):
    created = await client.post(f"{BASE}/", json={"url": "https://hooks.example.com/a"}, headers=tenant_headers)
    data = created.json()

    resp = await client.post(f"{BASE}/{data['id']}/rotate-secret", headers=tenant_headers)
    assert resp.status_code == 200
    rotated = resp.json()
    assert rotated["id"] == data["id"]
    assert rotated["secret"] != data["secret"]
    assert len(rotated["secret"]) == 64


@pytest.mark.asyncio
async def test_delete_config(client, tenant_headers):
    created = await client.post(f"{BASE}/", json={"url": "https://hooks.example.com/a"}, headers=tenant_headers)
    webhook_id = created.json()["id"]

    assert (await client.delete(f"{BASE}/{webhook_id}", headers=tenant_headers)).status_code == 204
    assert (await client.get(f"{BASE}/{webhook_id}", headers=tenant_headers)).status_code == 404


# ── Deliveries ───────────────────────────────────────────
async def _seed_deliveries():
    async with async_session() as session:
        svc = WebhookDeliveryService(session)
        ok = await svc.create_delivery("cfg-1", "tenant-a", "usage.threshold.80", {"event": "usage.threshold.80"})
        await svc.mark_success(ok, 200, "ok", 15)
        pending = await svc.create_delivery("cfg-1", "tenant-a", "usage.threshold.100", {"event": "usage.threshold.100"})
        other = await svc.create_delivery("cfg-2", "tenant-b", "usage.threshold.80", {"event": "usage.threshold.80"})
        return ok.id, pending.id, other.id


@pytest.mark.asyncio
async def test_list_deliveries(client, tenant_headers):
    ok_id, pending_id, _ = await _seed_deliveries()

    resp = await client.get(f"{BASE}/deliveries", headers=tenant_headers)
    assert resp.status_code == 200
    assert {d["id"] for d in resp.json()} == {ok_id, pending_id}

    resp = await client.get(f"{BASE}/deliveries", params={"status": "success"}, headers=tenant_headers)
    [delivery] = resp.json()
    assert delivery["id"] == ok_id
    assert delivery["attempt_count"] == 1
    assert delivery["payload"] == {"event": "usage.threshold.80"}

    resp = await client.get(
        f"{BASE}/deliveries", params={"event_type": "usage.threshold.100"}, headers=tenant_headers
    )
    assert [d["id"] for d in resp.json()] == [pending_id]

    resp = await client.get(f"{BASE}/deliveries", params={"limit": 1}, headers=tenant_headers)
    assert len(resp.json()) == 1


@pytest.mark.asyncio
async def test_list_deliveries_rejects_unknown_status(client, tenant_headers):
    resp = await client.get(f"{BASE}/deliveries", params={"status": "bogus"}, headers=tenant_headers)
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_delivery_tenant_scoping(client, tenant_headers, admin_headers):
    _, _, other_id = await _seed_deliveries()

    assert (await client.get(f"{BASE}/deliveries/{other_id}", headers=tenant_headers)).status_code == 403
    assert (
        await client.get(f"{BASE}/deliveries", params={"tenant_id": "tenant-b"}, headers=tenant_headers)
    ).status_code == 403

    resp = await client.get(f"{BASE}/deliveries", params={"tenant_id": "tenant-b"}, headers=admin_headers)
    assert [d["id"] for d in resp.json()] == [other_id]
    assert (await client.get(f"{BASE}/deliveries/{other_id}", headers=admin_headers)).status_code == 200


@pytest.mark.asyncio
async def test_get_missing_delivery(client, tenant_headers):
    resp = await client.get(f"{BASE}/deliveries/nope", headers=tenant_headers)
    assert resp.status_code == 404


# ── Test sends ───────────────────────────────────────────
@pytest.mark.asyncio
async def test_send_test_webhook(client, tenant_headers, monkeypatch):
    receiver = Receiver(200)
    monkeypatch.setattr(app.state, "webhook_queue", WebhookQueue(async_session, transport=receiver.transport))

    resp = await client.post(
        f"{BASE}/test", json={"url": "https://receiver.example.com/hook"}, headers=tenant_headers
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["status_code"] == 200
    assert data["response_body"] == "status 200"

    [request] = receiver.requests
    body = json.loads(request.content)
    assert verify(
        body,
        data["headers_sent"]["X-Webhook-Signature"],
        int(data["headers_sent"]["X-Webhook-Timestamp"]),
        data["secret_used"],
    )

    history = await client.get(f"{BASE}/deliveries", headers=tenant_headers)
    assert history.json() == []


@pytest.mark.asyncio
async def test_send_test_webhook_non_2xx_is_reported(client, tenant_headers, monkeypatch):
    receiver = Receiver(503)
    monkeypatch.setattr(app.state, "webhook_queue", WebhookQueue(async_session, transport=receiver.transport))

    resp = await client.post(
        f"{BASE}/test", json={"url": "https://receiver.example.com/hook"}, headers=tenant_headers
    )
    assert resp.status_code == 200
    assert resp.json()["status_code"] == 503


@pytest.mark.asyncio
async def test_send_test_webhook_invalid_url(client, tenant_headers):
    resp = await client.post(f"{BASE}/test", json={"url": "ftp://nope"}, headers=tenant_headers)
    assert resp.status_code == 400


# ── Admin ────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_simulate_threshold_requires_admin(client, tenant_headers):
    resp = await client.post(
        f"{BASE}/simulate-threshold", json={"tenant_id": "tenant-a", "threshold": 80}, headers=tenant_headers
    )
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_simulate_threshold(client, tenant_headers, admin_headers):
    await client.post(f"{BASE}/", json={"url": "https://hooks.example.com/a"}, headers=tenant_headers)

    resp = await client.post(
        f"{BASE}/simulate-threshold", json={"tenant_id": "tenant-a", "threshold": 100}, headers=admin_headers
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["mock_data"]["current_usage"] == 10000
    assert len(data["delivery_ids"]) == 1

    history = await client.get(f"{BASE}/deliveries", headers=tenant_headers)
    [delivery] = history.json()
    assert delivery["event_type"] == "usage.threshold.100"
    assert delivery["payload"]["client_id"] == "tenant-a"


@pytest.mark.asyncio
async def test_simulate_threshold_rejects_other_values(client, admin_headers):
    resp = await client.post(
        f"{BASE}/simulate-threshold", json={"tenant_id": "tenant-a", "threshold": 50}, headers=admin_headers
    )
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_queue_status(client, admin_headers, tenant_headers):
    resp = await client.get(f"{BASE}/queue/status", headers=admin_headers)
    assert resp.status_code == 200
    assert set(resp.json()) == {"running", "queue_size", "monitor_pending"}
    assert (await client.get(f"{BASE}/queue/status", headers=tenant_headers)).status_code == 403


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
