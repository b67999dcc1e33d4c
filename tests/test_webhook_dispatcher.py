"""
Tests for outbound webhook signing and delivery.
"""
import json
from unittest.mock import AsyncMock

import httpx
import pytest

from billing.handlers import webhook_dispatcher as events
from billing.handlers.webhook_dispatcher import (
    DatabaseEndpointRegistry, InMemoryEndpointRegistry, WebhookDispatcher, emit_safely, sign_payload,
    verify_signature,
)

TS = 1_736_942_400
BODY = '{"id":"evt_1","type":"payment.succeeded"}'
SECRET = "whsec_test_secret"


def make_dispatcher(registry, handler, **kwargs):
    return WebhookDispatcher(
        registry,
        attempts=kwargs.pop("attempts", 2),
        retry_delay=0,
        client_factory=lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        clock=lambda: TS,
        **kwargs,
    )


# ──────────────────────────────────────────────────────────────────────────────
# signature
# ──────────────────────────────────────────────────────────────────────────────
def test_signature_round_trip():
    header = sign_payload(SECRET, TS, BODY)
    assert header.startswith(f"t={TS},v1=")
    assert verify_signature(header, BODY, SECRET, now_ts=TS)
    assert verify_signature(header, BODY, SECRET, now_ts=TS + 300)


@pytest.mark.parametrize("header_fn, body, secret, now_ts", [
    (lambda: sign_payload(SECRET, TS, BODY), BODY + " ", SECRET, TS),             # tampered body
    (lambda: sign_payload(SECRET, TS, BODY), BODY, "whsec_other", TS),            # wrong secret
    (lambda: sign_payload(SECRET, TS, BODY), BODY, SECRET, TS + 301),             # stale
    (lambda: "v1=deadbeef", BODY, SECRET, TS),                                    # no timestamp
    (lambda: "", BODY, SECRET, TS),
    (lambda: sign_payload(SECRET, TS, BODY), BODY, "", TS),
])
def test_signature_rejections(header_fn, body, secret, now_ts):
    assert not verify_signature(header_fn(), body, secret, now_ts=now_ts)


def test_signature_accepts_any_matching_v1():
    good = sign_payload(SECRET, TS, BODY).split(",")[1]
    header = f"t={TS},v1=0000,{good}"
    assert verify_signature(header, BODY, SECRET, now_ts=TS)


# ──────────────────────────────────────────────────────────────────────────────
# delivery
# ──────────────────────────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_fan_out_isolates_failing_endpoint():
    registry = InMemoryEndpointRegistry()
    registry.register("https://a.example.com/hook", "secret_a")
    ok_ep = registry.register("https://b.example.com/hook", "secret_b", ["payment.succeeded"])
    registry.register("https://c.example.com/hook", "secret_c", ["subscription.canceled"])
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(500 if request.url.host == "a.example.com" else 200)

    report = await make_dispatcher(registry, handler).emit("payment.succeeded", {"id": "pay_1"})

    hosts = [r.url.host for r in seen]
    assert hosts.count("a.example.com") == 2
    assert hosts.count("b.example.com") == 1
    assert "c.example.com" not in hosts
    assert report.delivered
    by_url = {d.url: d for d in report.deliveries}
    assert by_url["https://a.example.com/hook"].attempts == 2
    assert by_url["https://b.example.com/hook"].success
    assert "HTTP 500" in report.error_summary

    req = next(r for r in seen if r.url.host == "b.example.com")
    body = req.content.decode("utf-8")
    assert verify_signature(req.headers["X-Webhook-Signature"], body, ok_ep.secret, now_ts=TS)
    assert req.headers["X-Webhook-Event-Type"] == "payment.succeeded"
    assert req.headers["X-Webhook-Source"] == events.SOURCE
    envelope = json.loads(body)
    assert envelope["type"] == "payment.succeeded"
    assert envelope["created"] == TS
    assert envelope["data"] == {"id": "pay_1"}
    assert req.headers["X-Webhook-Event-Id"] == envelope["id"]


@pytest.mark.asyncio
async def test_client_error_is_not_retried():
    registry = InMemoryEndpointRegistry()
    registry.register("https://a.example.com/hook", SECRET)
    report = await make_dispatcher(registry, lambda r: httpx.Response(400)).emit("payment.failed", {})
    assert report.deliveries[0].attempts == 1
    assert report.deliveries[0].status_code == 400
    assert not report.delivered


@pytest.mark.asyncio
async def test_network_errors_are_retried():
    registry = InMemoryEndpointRegistry()
    registry.register("https://a.example.com/hook", SECRET)
    registry.register("https://b.example.com/hook", SECRET)

    def handler(request):
        if request.url.host == "a.example.com":
            raise httpx.ConnectError("connection refused", request=request)
        raise httpx.ReadTimeout("slow", request=request)

    report = await make_dispatcher(registry, handler).emit("payment.failed", {})
    by_url = {d.url: d for d in report.deliveries}
    assert by_url["https://a.example.com/hook"].error.startswith("ConnectError")
    assert by_url["https://b.example.com/hook"].error == "timeout"
    assert all(d.attempts == 2 for d in report.deliveries)


@pytest.mark.asyncio
async def test_no_endpoints_no_requests():
    handler = AsyncMock()
    report = await make_dispatcher(InMemoryEndpointRegistry(), handler).emit("payment.failed", {})
    assert report.deliveries == []
    assert not report.delivered
    handler.assert_not_called()


@pytest.mark.asyncio
async def test_registry_failure_does_not_raise():
    class Broken:
        def endpoints(self):
            raise RuntimeError("db down")

    report = await make_dispatcher(Broken(), lambda r: httpx.Response(200)).emit("payment.failed", {})
    assert report.deliveries == []


@pytest.mark.asyncio
async def test_test_event_ignores_filter():
    registry = InMemoryEndpointRegistry()
    ep = registry.register("https://a.example.com/hook", SECRET, ["payment.failed"])
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(204)

    result = await make_dispatcher(registry, handler).send_test_event(ep)
    assert result.success
    assert seen[0]["type"] == events.TEST_EVENT
    assert seen[0]["data"]["endpointId"] == ep.id


@pytest.mark.asyncio
async def test_emit_safely_never_raises():
    await emit_safely(None, "payment.failed", {})
    broken = AsyncMock()
    broken.emit.side_effect = RuntimeError("boom")
    await emit_safely(broken, "payment.failed", {"id": 1})
    broken.emit.assert_awaited_once_with("payment.failed", {"id": 1})


# ──────────────────────────────────────────────────────────────────────────────
# registries & payloads
# ──────────────────────────────────────────────────────────────────────────────
def test_in_memory_registry_upserts_by_url():
    registry = InMemoryEndpointRegistry()
    first = registry.register("https://a.example.com/hook", "s1")
    second = registry.register("https://a.example.com/hook", "s2", ["payment.failed"])
    assert first.id == second.id
    assert [ep.secret for ep in registry.endpoints()] == ["s2"]
    registry.register("https://a.example.com/hook", "s2", enabled=False)
    assert registry.endpoints() == []
    assert registry.remove(first.id)


def test_database_registry(repo):
    registry = DatabaseEndpointRegistry(repo)
    first = registry.register("https://a.example.com/hook", "s1")
    second = registry.register("https://a.example.com/hook", "s2", ["payment.failed", "payment.succeeded"])

    assert first.id == second.id
    [ep] = registry.endpoints()
    assert ep.secret == "s2"
    assert ep.event_types == ["payment.failed", "payment.succeeded"]
    assert ep.accepts("payment.failed")
    assert not ep.accepts("subscription.canceled")

    assert registry.remove(ep.id)
    assert registry.endpoints() == []


def test_customer_id_is_stable_pseudonym():
    assert events.customer_id(42) == events.customer_id(42)
    assert events.customer_id(42) != events.customer_id(43)
    assert events.customer_id(42).startswith("cus_")
    assert len(events.customer_id(42)) == 28


def test_contract_payload_has_no_signature(make_contract):
    contract = make_contract(1)
    data = events.contract_data(contract)
    assert contract.contract_signature not in json.dumps(data)
    assert data["customer"] == events.customer_id(1)
    assert data["status"] == "active"


def test_subscription_payload(make_active_subscription):
    sub = make_active_subscription(7)
    data = events.subscription_data(sub)
    assert data["object"] == "subscription"
    assert data["currency"] == "IRR"
    assert data["customer"] == events.customer_id(7)
    assert data["nextBillingDate"].endswith("Z")
