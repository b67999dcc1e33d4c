# payman_billing/billing/handlers/webhook_dispatcher.py
"""
Outbound billing events: registry of destinations, HMAC signing, fan-out delivery.

Delivery is best-effort. dispatch() never raises; each destination gets its own
timeout and retry budget and a failing destination does not delay the others.
"""
from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import httpx

from billing.config import OUTBOUND_WEBHOOK_ATTEMPTS, OUTBOUND_WEBHOOK_TIMEOUT_SEC
from billing.utils.time_helpers import iso_utc

logger = logging.getLogger(__name__)

SOURCE = "billing-engine"
USER_AGENT = "payman-billing-webhooks/1.0"
RETRYABLE_STATUS = {429, 500, 502, 503, 504}

# event types
PAYMENT_SUCCEEDED = "payment.succeeded"
PAYMENT_FAILED = "payment.failed"
SUBSCRIPTION_CREATED = "subscription.created"
SUBSCRIPTION_ACTIVATED = "subscription.activated"
SUBSCRIPTION_CANCELED = "subscription.canceled"
SUBSCRIPTION_EXPIRED = "subscription.expired"
SUBSCRIPTION_PLAN_CHANGED = "subscription.plan_changed"
CONTRACT_ACTIVATED = "contract.activated"
CONTRACT_CANCELLED = "contract.cancelled"
TEST_EVENT = "webhook.test"


# ─────────────────────────────────────────────────────────────────────────────
# Registry
# ─────────────────────────────────────────────────────────────────────────────
@dataclass
class WebhookEndpoint:
    id: str
    url: str
    secret: str
    event_types: List[str] = field(default_factory=lambda: ["*"])
    enabled: bool = True
    description: Optional[str] = None

    def accepts(self, event_type: str) -> bool:
        return self.enabled and ("*" in self.event_types or event_type in self.event_types)


class InMemoryEndpointRegistry:
    """
    Process-local registry. Only valid for a single instance (dev / tests);
    multi-instance deployments use DatabaseEndpointRegistry.
    """

    def __init__(self):
        self._items: Dict[str, WebhookEndpoint] = {}

    def register(self, url: str, secret: str, event_types: Optional[List[str]] = None, *,
                 enabled: bool = True, description: Optional[str] = None) -> WebhookEndpoint:
        for ep in self._items.values():
            if ep.url == url:
                ep.secret = secret
                ep.event_types = list(event_types or ["*"])
                ep.enabled = enabled
                ep.description = description
                return ep
        ep = WebhookEndpoint(
            id=f"we_{uuid.uuid4().hex[:16]}",
            url=url,
            secret=secret,
            event_types=list(event_types or ["*"]),
            enabled=enabled,
            description=description,
        )
        self._items[ep.id] = ep
        return ep

    def remove(self, endpoint_id: str) -> bool:
        return self._items.pop(endpoint_id, None) is not None

    def endpoints(self) -> List[WebhookEndpoint]:
        return [ep for ep in self._items.values() if ep.enabled]


class DatabaseEndpointRegistry:
    """Registry backed by the webhook_endpoints table."""

    def __init__(self, repo):
        self._repo = repo

    def register(self, url: str, secret: str, event_types: Optional[List[str]] = None, *,
                 enabled: bool = True, description: Optional[str] = None) -> WebhookEndpoint:
        rec = self._repo.endpoint_upsert(url=url, secret=secret, event_types=list(event_types or ["*"]),
                                         enabled=enabled, description=description)
        return self._to_endpoint(rec)

    def remove(self, endpoint_id: str) -> bool:
        return self._repo.endpoint_delete(endpoint_id)

    def endpoints(self) -> List[WebhookEndpoint]:
        return [self._to_endpoint(rec) for rec in self._repo.endpoints_list(enabled_only=True)]

    @staticmethod
    def _to_endpoint(rec) -> WebhookEndpoint:
        return WebhookEndpoint(
            id=rec.id,
            url=rec.url,
            secret=rec.secret,
            event_types=rec.event_types,
            enabled=rec.enabled,
            description=rec.description,
        )


# ─────────────────────────────────────────────────────────────────────────────
# Envelope & signature
# ─────────────────────────────────────────────────────────────────────────────
def build_event(event_type: str, data: Dict[str, Any], *, created: Optional[int] = None) -> Dict[str, Any]:
    return {
        "id": f"evt_{uuid.uuid4().hex[:24]}",
        "type": event_type,
        "created": int(time.time()) if created is None else int(created),
        "data": data,
    }


def serialize_event(event: Dict[str, Any]) -> str:
    return json.dumps(event, separators=(",", ":"), ensure_ascii=False)


def compute_signature(secret: str, timestamp: int, body: str) -> str:
    message = f"{timestamp}.{body}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def sign_payload(secret: str, timestamp: int, body: str) -> str:
    """Header value: t={ts},v1={hex hmac-sha256 of "{ts}.{body}"}"""
    return f"t={timestamp},v1={compute_signature(secret, timestamp, body)}"


def verify_signature(header: str, body: str, secret: str, *, tolerance_sec: int = 300,
                     now_ts: Optional[int] = None) -> bool:
    """
    Receiver-side check of X-Webhook-Signature. Constant-time comparison,
    rejects stale timestamps.
    """
    if not header or not secret:
        return False
    parts: Dict[str, List[str]] = {}
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if sep:
            parts.setdefault(key, []).append(value)
    try:
        ts = int(parts.get("t", [""])[0])
    except ValueError:
        return False
    now_ts = int(time.time()) if now_ts is None else now_ts
    if abs(now_ts - ts) > tolerance_sec:
        return False
    expected = compute_signature(secret, ts, body)
    return any(hmac.compare_digest(expected, candidate) for candidate in parts.get("v1", []))


def customer_id(user_id: int) -> str:
    """Stable pseudonymous customer id, so receivers never see raw user ids."""
    return "cus_" + hashlib.sha256(f"billing_{user_id}".encode("utf-8")).hexdigest()[:24]


def payment_data(payment) -> Dict[str, Any]:
    return {
        "object": "payment",
        "id": payment.id,
        "customer": customer_id(payment.user_id),
        "subscriptionId": payment.subscription_id,
        "productId": payment.product_id,
        "amount": payment.amount,
        "currency": "IRR",
        "kind": payment.kind,
        "status": payment.status,
        "authority": payment.gateway_authority,
        "refId": payment.ref_id,
        "failureReason": payment.failure_reason,
        "retryCount": payment.retry_count,
        "maxRetries": payment.max_retries,
        "nextRetryAt": iso_utc(payment.next_retry_at),
        "paidAt": iso_utc(payment.paid_at),
        "failedAt": iso_utc(payment.failed_at),
    }


def subscription_data(sub) -> Dict[str, Any]:
    return {
        "object": "subscription",
        "id": sub.id,
        "customer": customer_id(sub.user_id),
        "productId": sub.product_id,
        "status": sub.status,
        "billingPeriod": sub.billing_period,
        "currentPrice": sub.current_price,
        "currency": "IRR",
        "startDate": iso_utc(sub.start_date),
        "endDate": iso_utc(sub.end_date),
        "nextBillingDate": iso_utc(sub.next_billing_date),
        "contractId": sub.direct_debit_contract_id,
    }


def contract_data(contract) -> Dict[str, Any]:
    # never includes the signature
    return {
        "object": "direct_debit_contract",
        "id": contract.id,
        "customer": customer_id(contract.user_id),
        "status": contract.contract_status,
        "isPrimary": contract.is_primary,
        "isActive": contract.is_active,
        "maxDailyAmount": contract.max_daily_amount,
        "maxDailyCount": contract.max_daily_count,
        "maxMonthlyCount": contract.max_monthly_count,
        "expiresAt": iso_utc(contract.expires_at),
    }


# ─────────────────────────────────────────────────────────────────────────────
# Delivery
# ─────────────────────────────────────────────────────────────────────────────
@dataclass
class DeliveryResult:
    endpoint_id: str
    url: str
    success: bool
    attempts: int
    status_code: Optional[int] = None
    error: Optional[str] = None


@dataclass
class DispatchReport:
    event_id: str
    event_type: str
    deliveries: List[DeliveryResult] = field(default_factory=list)

    @property
    def delivered(self) -> bool:
        return any(d.success for d in self.deliveries)

    @property
    def error_summary(self) -> Optional[str]:
        errors = [f"{d.url}: {d.error}" for d in self.deliveries if not d.success]
        return "; ".join(errors) if errors else None


class WebhookDispatcher:
    def __init__(
        self,
        registry,
        *,
        timeout: float = OUTBOUND_WEBHOOK_TIMEOUT_SEC,
        attempts: int = OUTBOUND_WEBHOOK_ATTEMPTS,
        retry_delay: float = 1.0,
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.registry = registry
        self.timeout = timeout
        self.attempts = max(1, attempts)
        self.retry_delay = retry_delay
        self._client_factory = client_factory or (lambda: httpx.AsyncClient(timeout=httpx.Timeout(self.timeout)))
        self._clock = clock

    def _headers(self, endpoint: WebhookEndpoint, event: Dict[str, Any], body: str) -> Dict[str, str]:
        ts = int(self._clock())
        return {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "X-Webhook-Signature": sign_payload(endpoint.secret, ts, body),
            "X-Webhook-Timestamp": str(ts),
            "X-Webhook-Event-Type": event["type"],
            "X-Webhook-Event-Id": event["id"],
            "X-Webhook-Source": SOURCE,
        }

    async def _deliver(self, client: httpx.AsyncClient, endpoint: WebhookEndpoint,
                       event: Dict[str, Any], body: str) -> DeliveryResult:
        last_error: Optional[str] = None
        status: Optional[int] = None
        for attempt in range(1, self.attempts + 1):
            try:
                # signed per attempt so the timestamp stays fresh
                resp = await client.post(endpoint.url, content=body.encode("utf-8"),
                                         headers=self._headers(endpoint, event, body),
                                         timeout=self.timeout)
                status = resp.status_code
                if 200 <= status < 300:
                    return DeliveryResult(endpoint.id, endpoint.url, True, attempt, status)
                last_error = f"HTTP {status}"
                if status not in RETRYABLE_STATUS:
                    break
            except httpx.TimeoutException:
                last_error = "timeout"
            except httpx.HTTPError as e:
                last_error = f"{type(e).__name__}: {e}"
            if attempt < self.attempts:
                await asyncio.sleep(self.retry_delay * attempt)
        logger.warning("Webhook delivery failed: event=%s type=%s url=%s error=%s",
                       event["id"], event["type"], endpoint.url, last_error)
        return DeliveryResult(endpoint.id, endpoint.url, False, attempt, status, last_error)

    async def dispatch(self, event: Dict[str, Any]) -> DispatchReport:
        report = DispatchReport(event_id=event["id"], event_type=event["type"])
        try:
            targets = [ep for ep in self.registry.endpoints() if ep.accepts(event["type"])]
        except Exception as e:
            logger.exception("Webhook registry lookup failed for event %s: %s", event["id"], e)
            return report
        if not targets:
            logger.debug("No webhook endpoints for %s", event["type"])
            return report

        body = serialize_event(event)
        async with self._client_factory() as client:
            results = await asyncio.gather(
                *(self._deliver(client, ep, event, body) for ep in targets),
                return_exceptions=True,
            )
        for ep, res in zip(targets, results):
            if isinstance(res, BaseException):
                logger.error("Webhook delivery crashed for %s: %s", ep.url, res)
                report.deliveries.append(DeliveryResult(ep.id, ep.url, False, 0, None, repr(res)))
            else:
                report.deliveries.append(res)
        logger.info("Webhook %s (%s) delivered to %d/%d endpoints",
                    event["id"], event["type"], sum(1 for d in report.deliveries if d.success), len(targets))
        return report

    async def emit(self, event_type: str, data: Dict[str, Any]) -> DispatchReport:
        return await self.dispatch(build_event(event_type, data, created=int(self._clock())))

    async def send_test_event(self, endpoint: WebhookEndpoint) -> DeliveryResult:
        """Delivers a webhook.test event to one endpoint, ignoring its event filter."""
        event = build_event(TEST_EVENT, {"message": "test webhook", "endpointId": endpoint.id},
                            created=int(self._clock()))
        body = serialize_event(event)
        async with self._client_factory() as client:
            return await self._deliver(client, endpoint, event, body)


async def emit_safely(dispatcher: Optional[WebhookDispatcher], event_type: str, data: Dict[str, Any]) -> None:
    """Services call this; a missing dispatcher or a crashing emit never fails the business operation."""
    if dispatcher is None:
        return
    try:
        await dispatcher.emit(event_type, data)
    except Exception as e:
        logger.warning("emit %s failed: %s", event_type, e)
