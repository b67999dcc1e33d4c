"""
Tests for the aiohttp app: gateway webhook route, admin listing, health check.
"""
from unittest.mock import patch

import pytest
from aiohttp import test_utils

from billing.handlers.webhook_security import InMemoryRateLimiter, WebhookSecurityGate
from billing.run import create_app
from billing.utils.errors import GatewayTransientError
from billing.utils.zarinpal import GatewayResult

UA = {"User-Agent": "ZarinPal-Webhook/1.0"}


@pytest.fixture
def gate():
    return WebhookSecurityGate(InMemoryRateLimiter(limit=100, window_sec=60), production=False,
                               user_agent_marker="zarinpal")


def client_for(processor, gate, repo, admin_token="", production=False):
    app = create_app(processor, gate, repo, admin_token=admin_token, production=production)
    return test_utils.TestClient(test_utils.TestServer(app))


@pytest.mark.asyncio
async def test_webhook_acknowledges(processor, gate, repo):
    async with client_for(processor, gate, repo) as client:
        resp = await client.post("/webhooks/zarinpal", json={"authority": "A_UNKNOWN", "status": "OK"}, headers=UA)
        assert resp.status == 200
        body = await resp.json()

    assert set(body) == {"received", "eventId", "processed", "forwarded"}
    assert body["received"] is True
    assert body["processed"] is True
    assert repo.webhook_event_get(body["eventId"]) is not None


@pytest.mark.asyncio
async def test_webhook_settles_checkout(processor, subscriptions, gate, repo):
    res = await subscriptions.create_subscription(user_id=1, product_id="lifetime")
    async with client_for(processor, gate, repo) as client:
        resp = await client.post("/webhooks/zarinpal",
                                 json={"Authority": res.payment.gateway_authority, "Status": "OK"}, headers=UA)
        assert resp.status == 200
    assert repo.subscription_get(res.subscription.id).status == "active"


@pytest.mark.asyncio
async def test_rejected_request_leaves_no_trace(processor, gate, repo):
    async with client_for(processor, gate, repo) as client:
        resp = await client.post("/webhooks/zarinpal", data="authority=A1",
                                 headers={**UA, "Content-Type": "application/x-www-form-urlencoded"})
        assert resp.status == 415
        bad_agent = await client.post("/webhooks/zarinpal", json={"authority": "A1", "status": "OK"},
                                      headers={"User-Agent": "curl/8.0"})
        assert bad_agent.status == 403
        assert (await bad_agent.json())["received"] is False

    _, total = repo.webhook_events_list()
    assert total == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("raw", ["{not json", "[1, 2]"])
async def test_webhook_bad_body(processor, gate, repo, raw):
    async with client_for(processor, gate, repo) as client:
        resp = await client.post("/webhooks/zarinpal", data=raw, headers={**UA, "Content-Type": "application/json"})
        assert resp.status == 400


@pytest.mark.asyncio
async def test_webhook_audit_failure_is_500(processor, gate, repo):
    with patch.object(repo, "webhook_event_create", side_effect=RuntimeError("db down")):
        async with client_for(processor, gate, repo) as client:
            resp = await client.post("/webhooks/zarinpal", json={"authority": "A1", "status": "OK"}, headers=UA)
            assert resp.status == 500


@pytest.mark.asyncio
async def test_events_listing_requires_token(processor, gate, repo):
    await processor.process({"authority": "A1", "status": "NOK"})
    async with client_for(processor, gate, repo, admin_token="s3cret") as client:
        denied = await client.get("/webhooks/events")
        assert denied.status == 401

        auth = {"Authorization": "Bearer s3cret"}
        resp = await client.get("/webhooks/events", params={"processed": "true", "limit": "10"}, headers=auth)
        assert resp.status == 200
        page = await resp.json()
        assert page["total"] == 1
        assert page["limit"] == 10
        assert page["events"][0]["source"] == "zarinpal"

        bad = await client.get("/webhooks/events", params={"processed": "maybe"}, headers=auth)
        assert bad.status == 400


@pytest.mark.asyncio
async def test_deferred_verification_is_not_acknowledged(processor, subscriptions, gate, repo, gateway):
    res = await subscriptions.create_subscription(user_id=1, product_id="lifetime")
    gateway.verify_result = GatewayTransientError("ZarinPal verify_payment timed out")
    notification = {"authority": res.payment.gateway_authority, "status": "OK"}
    async with client_for(processor, gate, repo) as client:
        resp = await client.post("/webhooks/zarinpal", json=notification, headers=UA)
        assert resp.status == 503
        body = await resp.json()
        assert body["received"] is True
        assert body["processed"] is False

        gateway.verify_result = GatewayResult.ok(100, {"ref_id": "201"})
        again = await client.post("/webhooks/zarinpal", json=notification, headers=UA)
        assert again.status == 200

    assert repo.payment_get(res.payment.id).status == "completed"
    assert repo.subscription_get(res.subscription.id).status == "active"


@pytest.mark.asyncio
async def test_events_listing_closed_in_production_without_token(processor, gate, repo):
    async with client_for(processor, gate, repo, admin_token="", production=True) as client:
        resp = await client.get("/webhooks/events")
        assert resp.status == 503
        assert await resp.json() == {"error": "admin API disabled"}
        healthy = await client.get("/healthz")
        assert healthy.status == 200


@pytest.mark.asyncio
async def test_events_listing_open_in_development_without_token(processor, gate, repo):
    async with client_for(processor, gate, repo) as client:
        resp = await client.get("/webhooks/events")
        assert resp.status == 200


@pytest.mark.asyncio
async def test_healthz(processor, gate, repo):
    async with client_for(processor, gate, repo) as client:
        resp = await client.get("/healthz")
        assert resp.status == 200
        assert await resp.json() == {"status": "ok"}
