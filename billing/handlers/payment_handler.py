# payman_billing/billing/handlers/payment_handler.py
"""
Inbound gateway notifications.

The payload is trusted only enough to find the payment. Money is marked as moved
only after the gateway confirms it server-side (verify_payment). Every notification
leaves an audit row first; the row is marked processed exactly once.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

from billing.handlers import webhook_dispatcher as events
from billing.utils import billing_db
from billing.utils.billing_scheduler import backoff
from billing.utils.errors import GatewayAuthError, GatewayError, GatewayTransientError, ReconciliationAmbiguous
from billing.utils.time_helpers import from_db_naive, iso_utc, now_utc

logger = logging.getLogger(__name__)

SOURCE = "zarinpal"
AMBIGUOUS = "reconciliation_ambiguous"
STATUS_OK, STATUS_NOK = "OK", "NOK"


@dataclass
class WebhookAck:
    received: bool
    event_id: Optional[str]
    processed: bool
    forwarded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "received": self.received,
            "eventId": self.event_id,
            "processed": self.processed,
            "forwarded": self.forwarded,
        }


def _first(payload: Dict[str, Any], *names: str) -> Any:
    for name in names:
        value = payload.get(name)
        if value not in (None, ""):
            return value
    return None


def parse_notification(payload: Dict[str, Any]) -> Tuple[Optional[str], Optional[str], Optional[str]]:
    """(authority, status OK|NOK, ref_id). ZarinPal sends both lower and capitalized keys."""
    authority = _first(payload, "authority", "Authority")
    status = _first(payload, "status", "Status")
    ref_id = _first(payload, "ref_id", "refId", "RefID")
    status = str(status).strip().upper() if status is not None else None
    return (str(authority).strip() if authority else None), status, (str(ref_id) if ref_id else None)


class WebhookProcessor:
    def __init__(
        self,
        repo: billing_db.BillingRepository,
        gateway,
        subscriptions,
        *,
        dispatcher=None,
        dedup=None,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.repo = repo
        self.gateway = gateway
        self.subscriptions = subscriptions
        self.dispatcher = dispatcher
        self.dedup = dedup
        self.clock = clock

    async def process(self, payload: Dict[str, Any]) -> WebhookAck:
        """
        Audit row -> lookup -> (verify) -> settle payment -> cascade -> emit -> processed.
        A failing audit write propagates (the gateway will redeliver). A verification
        that could not be carried out (gateway down, credentials refused) leaves the
        payment pending and the event unprocessed, and the ack says processed=False.
        Anything else is recorded on the event and acknowledged.
        """
        authority, status, ref_id = parse_notification(payload)
        event = self.repo.webhook_event_create(
            source=SOURCE,
            event_type=f"payment.{(status or 'unknown').lower()}",
            raw_payload=payload,
            now=self.clock(),
        )

        if not authority or status not in (STATUS_OK, STATUS_NOK):
            reason = "invalid payload: authority and status OK|NOK are required"
            logger.warning("Webhook %s: %s", event.id, reason)
            self.repo.webhook_event_mark_processed(event.id, now=self.clock(), processing_error=reason)
            return WebhookAck(True, event.id, processed=True)

        payment_id: Optional[str] = None
        outcome: Optional[Tuple[str, Dict[str, Any]]] = None
        error: Optional[str] = None
        try:
            payment = self.repo.payment_find_by_authority(authority)
            if payment is None:
                raise ReconciliationAmbiguous(f"no payment for authority {authority}")
            payment_id = payment.id

            if self.dedup is not None and not await self.dedup.should_process(authority, status):
                logger.info("Duplicate notification for %s (%s), skipping", authority, status)
                error = "duplicate notification"
            elif payment.status == billing_db.PAY_COMPLETED:
                logger.info("Payment %s already completed, notification ignored", payment.id)
            elif payment.status == billing_db.PAY_FAILED and status == STATUS_NOK:
                logger.info("Payment %s already failed, repeated NOK ignored", payment.id)
            elif status == STATUS_OK:
                outcome = await self._settle_ok(payment, authority, ref_id)
            else:
                outcome = self._settle_failed(payment, "Payment cancelled or failed at the gateway")
        except ReconciliationAmbiguous as e:
            logger.warning("Webhook %s: %s (flagged for manual review)", event.id, e)
            error = AMBIGUOUS
        except (GatewayTransientError, GatewayAuthError) as e:
            logger.warning("Webhook %s: verification of %s deferred: %s", event.id, authority, e)
            if self.dedup is not None:
                await self.dedup.forget(authority)
            self.repo.webhook_event_record_error(event.id, error=f"{type(e).__name__}: {e}", payment_id=payment_id)
            return WebhookAck(True, event.id, processed=False)
        except Exception as e:
            logger.exception("Webhook %s processing failed: %s", event.id, e)
            error = f"{type(e).__name__}: {e}"
            if self.dedup is not None:
                await self.dedup.forget(authority)

        forwarded = False
        if outcome is not None:
            forwarded = await self._forward(event.id, *outcome)

        self.repo.webhook_event_mark_processed(event.id, now=self.clock(), payment_id=payment_id,
                                               processing_error=error)
        return WebhookAck(True, event.id, processed=True, forwarded=forwarded)

    # ──────────────────────────────────────────────────────────────────────
    # settle
    # ──────────────────────────────────────────────────────────────────────
    async def _settle_ok(self, payment: billing_db.Payment, authority: str,
                         ref_id: Optional[str]) -> Optional[Tuple[str, Dict[str, Any]]]:
        try:
            result = self.gateway.verify_payment(authority, payment.amount)
        except (GatewayTransientError, GatewayAuthError):
            raise
        except GatewayError as e:
            logger.warning("Verification of payment %s raised %s", payment.id, e)
            return self._settle_failed(payment, f"Verification error: {e}")

        if result.is_transient or result.is_auth_error:
            raise result.to_exception()
        if not result.success:
            return self._settle_failed(payment, f"Verification failed: [{result.code}] {result.message}")

        rec, changed = self.repo.payment_mark_completed(
            payment.id, now=self.clock(), ref_id=result.data.get("ref_id") or ref_id, authority=authority,
        )
        if not changed:
            return None
        logger.info("Payment %s completed via webhook (ref_id=%s)", rec.id, rec.ref_id)

        if rec.kind == "recurring" and rec.subscription_id:
            self._advance_billing_date(rec)
        elif rec.subscription_id:
            await self.subscriptions.activate_from_payment(rec.id)
        return events.PAYMENT_SUCCEEDED, events.payment_data(rec)

    def _settle_failed(self, payment: billing_db.Payment, reason: str) -> Optional[Tuple[str, Dict[str, Any]]]:
        now = self.clock()
        next_retry_at = None
        if payment.kind == "recurring":
            next_retry_at = now + timedelta(minutes=backoff(payment.retry_count or 1))
        rec, changed = self.repo.payment_mark_failed(payment.id, now=now, reason=reason, next_retry_at=next_retry_at)
        if not changed:
            return None
        logger.info("Payment %s failed via webhook: %s", rec.id, reason)
        return events.PAYMENT_FAILED, events.payment_data(rec)

    def _advance_billing_date(self, payment: billing_db.Payment) -> None:
        """A recurring charge confirmed late still pays for exactly one period."""
        sub = self.repo.subscription_get(payment.subscription_id)
        if sub is None or sub.status != billing_db.SUB_ACTIVE:
            return
        current = from_db_naive(sub.next_billing_date) or self.clock()
        if current > self.clock():
            return  # already advanced for this cycle
        self.repo.subscription_set_next_billing(
            sub.id, next_billing_date=current + timedelta(days=self.subscriptions.period_days), now=self.clock(),
        )

    async def _forward(self, event_id: str, event_type: str, data: Dict[str, Any]) -> bool:
        if self.dispatcher is None:
            return False
        try:
            report = await self.dispatcher.emit(event_type, data)
        except Exception as e:
            logger.warning("Forwarding %s for webhook %s failed: %s", event_type, event_id, e)
            self.repo.webhook_event_mark_forwarded(event_id, forwarded=False, error=str(e), now=self.clock())
            return False
        self.repo.webhook_event_mark_forwarded(event_id, forwarded=report.delivered, error=report.error_summary,
                                               now=self.clock())
        return report.delivered


# ──────────────────────────────────────────────────────────────────────────────
# Admin listing
# ──────────────────────────────────────────────────────────────────────────────
def event_row(ev: billing_db.WebhookEvent) -> Dict[str, Any]:
    return {
        "id": ev.id,
        "source": ev.source,
        "eventType": ev.event_type,
        "processed": ev.processed,
        "processedAt": iso_utc(ev.processed_at),
        "paymentId": ev.payment_id,
        "processingError": ev.processing_error,
        "forwarded": ev.forwarded_to_external,
        "forwardingError": ev.forwarding_error,
        "createdAt": iso_utc(ev.created_at),
        "payload": ev.payload,
    }


def list_webhook_events(repo: billing_db.BillingRepository, *, source: Optional[str] = None,
                        processed: Optional[bool] = None, limit: int = 50, offset: int = 0) -> Dict[str, Any]:
    limit = max(1, min(int(limit), 200))
    offset = max(0, int(offset))
    rows, total = repo.webhook_events_list(source=source, processed=processed, limit=limit, offset=offset)
    return {"events": [event_row(ev) for ev in rows], "total": total, "limit": limit, "offset": offset}
