# payman_billing/billing/utils/billing_scheduler.py
"""
Recurring billing run.

Picks active monthly subscriptions whose next_billing_date has passed and charges
them through their direct-debit contract. Order of checks per subscription:

  1. a pending payment exists                   -> skip (a charge is in flight)
  2. failed payment still in backoff             -> skip
  3. failed payment with retry budget used up    -> expire (retry_exhausted)
  4. failure counter at the ceiling              -> expire (failure_ceiling)
  5. scheduled plan change due                   -> apply it
  6. no usable contract                          -> failed payment with backoff
  7. charge                                      -> completed | failed with backoff

There is no distributed lock: re-running over an overlapping window is safe
because of (1) and the unique pending guard on payments.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import httpx

from billing.config import (
    ALERT_WEBHOOK_URL, BILLING_BATCH_LIMIT, BILLING_CIRCUIT_MIN_PROCESSED, BILLING_FAILURE_CEILING,
    BILLING_INTERVAL_SEC,
)
from billing.utils import billing_db
from billing.utils.errors import ConcurrencyConflict, GatewayAuthError
from billing.utils.time_helpers import from_db_naive, iso_utc, now_utc
from billing.utils.zarinpal import GatewayResult

logger = logging.getLogger(__name__)

KIND_RECURRING = "recurring"
ALERT_SOURCE = "monthly-billing-cron"
MAX_BACKOFF_MIN = 24 * 60


def backoff(retry_count: int) -> int:
    """Minutes to wait after the retry_count-th failed attempt: 2^n hours, capped at 24h."""
    n = max(0, int(retry_count))
    return min(2 ** n * 60, MAX_BACKOFF_MIN)


@dataclass
class BillingRunResult:
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    expired: int = 0
    errors: List[str] = field(default_factory=list)
    aborted: bool = False       # gateway credentials rejected
    circuit_open: bool = False  # too many failures, batch stopped

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "expired": self.expired,
            "errors": list(self.errors),
            "aborted": self.aborted,
            "circuitOpen": self.circuit_open,
        }


async def _bill_subscription(sub: billing_db.Subscription, subscriptions, result: BillingRunResult, *,
                             now: datetime, max_retries: int, failure_ceiling: int) -> None:
    repo = subscriptions.repo

    if repo.payment_pending_for_subscription(sub.id) is not None:
        logger.info("Skip %s: payment already in flight", sub.id)
        result.skipped += 1
        return

    failed = repo.payment_latest_failed(sub.id, kind=KIND_RECURRING)
    if failed is not None:
        retry_at = from_db_naive(failed.next_retry_at)
        if retry_at is not None and retry_at > now:
            logger.debug("Skip %s: retry not due until %s", sub.id, retry_at)
            result.skipped += 1
            return
        if failed.retry_count >= failed.max_retries:
            await subscriptions.expire_subscription(sub.id, "retry_exhausted")
            result.expired += 1
            return

    if sub.meta.billing_failures >= failure_ceiling:
        await subscriptions.expire_subscription(sub.id, "failure_ceiling")
        result.expired += 1
        return

    if sub.meta.pending_plan_change is not None:
        sub = await subscriptions.apply_scheduled_plan_change(sub)

    try:
        if failed is not None:
            payment = repo.payment_reopen_for_retry(failed.id, now=now)
        else:
            payment = repo.payment_create_pending(
                user_id=sub.user_id,
                subscription_id=sub.id,
                product_id=sub.product_id,
                amount=sub.current_price,
                kind=KIND_RECURRING,
                max_retries=max_retries,
                now=now,
            )
    except ConcurrencyConflict as e:
        logger.info("Skip %s: %s", sub.id, e)
        result.skipped += 1
        return

    retry_at = now + timedelta(minutes=backoff(payment.retry_count))
    contract = None
    if sub.direct_debit_contract_id:
        contract = subscriptions.usable_contract(sub.user_id, sub.direct_debit_contract_id)

    if contract is None:
        charge = GatewayResult(False, 0, "no active direct debit contract", {}, "permanent")
    else:
        try:
            charge = subscriptions.charge(payment, contract, description=f"Renewal: {sub.product_id}")
        except GatewayAuthError as e:
            # not the customer's fault: give the attempt back
            repo.payment_mark_failed(payment.id, now=now, reason=f"gateway auth error: {e}", next_retry_at=None,
                                     retry_count=max(0, payment.retry_count - 1))
            raise

    payment = await subscriptions.settle_charge(payment, charge, contract=contract,
                                                next_retry_at=None if charge.success else retry_at)
    if charge.success:
        anchor = from_db_naive(sub.next_billing_date) or now
        repo.subscription_set_next_billing(sub.id, next_billing_date=anchor + timedelta(days=subscriptions.period_days),
                                           now=now)
        logger.info("Renewed %s (payment %s, amount %s)", sub.id, payment.id, payment.amount)
        result.successful += 1
        return

    reason = payment.failure_reason or charge.message
    result.failed += 1
    result.errors.append(f"{sub.id}: {reason}")
    count = subscriptions.record_billing_failure(sub.id, reason)
    logger.warning("Renewal of %s failed (attempt %s/%s, failures %s/%s): %s",
                   sub.id, payment.retry_count, payment.max_retries, count, failure_ceiling, reason)
    if count >= failure_ceiling:
        await subscriptions.expire_subscription(sub.id, "failure_ceiling")
        result.expired += 1


async def run_billing_cycle(
    subscriptions,
    *,
    now: Optional[datetime] = None,
    max_retries: Optional[int] = None,
    failure_ceiling: int = BILLING_FAILURE_CEILING,
    batch_limit: int = BILLING_BATCH_LIMIT,
    circuit_min_processed: int = BILLING_CIRCUIT_MIN_PROCESSED,
) -> BillingRunResult:
    """
    One pass over due subscriptions. One subscription's failure never stops the
    batch; rejected gateway credentials and the circuit breaker do.
    """
    now = now or subscriptions.clock()
    max_retries = subscriptions.max_retries if max_retries is None else max_retries
    result = BillingRunResult()
    due = subscriptions.repo.subscriptions_due(now, limit=batch_limit)
    logger.info("Billing run: %d subscriptions due", len(due))

    for sub in due:
        if result.processed > circuit_min_processed and result.failed > result.successful:
            result.circuit_open = True
            logger.error("Billing circuit open: %d failed / %d successful after %d processed",
                         result.failed, result.successful, result.processed)
            break
        result.processed += 1
        try:
            await _bill_subscription(sub, subscriptions, result, now=now, max_retries=max_retries,
                                     failure_ceiling=failure_ceiling)
        except GatewayAuthError as e:
            result.failed += 1
            result.aborted = True
            result.errors.append(f"{sub.id}: gateway auth error: {e}")
            logger.critical("Billing run aborted, gateway rejected merchant credentials: %s", e)
            break
        except Exception as e:
            result.failed += 1
            result.errors.append(f"{sub.id}: {type(e).__name__}: {e}")
            logger.exception("Billing of %s crashed: %s", sub.id, e)

    logger.info("Billing run done: processed=%d successful=%d failed=%d skipped=%d expired=%d",
                result.processed, result.successful, result.failed, result.skipped, result.expired)
    return result


async def send_failure_alert(
    result: BillingRunResult,
    url: str = ALERT_WEBHOOK_URL,
    *,
    client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
) -> bool:
    """POSTs a run summary to the operator alert hook when something went wrong."""
    if not url or (result.failed == 0 and not result.aborted and not result.circuit_open):
        return False
    alerts = []
    if result.failed:
        alerts.append("billing_failures")
    if len(result.errors) > 10:
        alerts.append("high_error_count")
    if result.aborted:
        alerts.append("gateway_auth")
    if result.circuit_open:
        alerts.append("circuit_open")
    payload = {
        "source": ALERT_SOURCE,
        "timestamp": iso_utc(now_utc()),
        "summary": result.to_dict(),
        "alerts": alerts,
        "errors": result.errors[:10],
    }
    factory = client_factory or (lambda: httpx.AsyncClient(timeout=httpx.Timeout(10.0)))
    try:
        async with factory() as client:
            resp = await client.post(url, json=payload)
            resp.raise_for_status()
        return True
    except httpx.HTTPError as e:
        logger.warning("Billing alert delivery failed: %s", e)
        return False


async def run_once(subscriptions, *, alert_url: str = ALERT_WEBHOOK_URL) -> BillingRunResult:
    result = await run_billing_cycle(subscriptions)
    await send_failure_alert(result, alert_url)
    return result


async def billing_loop(shutdown_event: asyncio.Event, subscriptions, *,
                       interval_sec: int = BILLING_INTERVAL_SEC, alert_url: str = ALERT_WEBHOOK_URL) -> None:
    """
    Background loop: one run per interval, stops promptly on shutdown_event.
    """
    logger.info("billing_loop started (interval=%ss)", interval_sec)
    while not shutdown_event.is_set():
        try:
            await run_once(subscriptions, alert_url=alert_url)
        except Exception as e:
            logger.exception("billing_loop error: %s", e)

        # interruptible sleep
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval_sec)
            break
        except asyncio.TimeoutError:
            continue
    logger.info("billing_loop stopped")
