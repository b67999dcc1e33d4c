# payman_billing/billing/handlers/subscription_handler.py
"""
Subscription lifecycle:

    pending -> active -> canceled | expired
    canceled -> (resubscribe) new pending subscription

Activation happens when the first payment completes, either right after an
immediate direct-debit charge or later through the gateway webhook.
Expiry is driven only by the billing scheduler.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from billing.config import BILLING_MAX_RETRIES, BILLING_PERIOD_DAYS, CALLBACK_BASE_URL
from billing.handlers import webhook_dispatcher as events
from billing.utils import billing_db
from billing.utils.catalog import MONTHLY, Product, ProductCatalog
from billing.utils.errors import (
    ConcurrencyConflict, GatewayAuthError, GatewayError, InvalidTransition, NotFoundError,
    SubscriptionConflict, ValidationError,
)
from billing.utils.metadata import (
    ActiveInfo, PendingInfo, PlanChange, PlanChangePending, SubscriptionMetadata,
)
from billing.utils.proration import (
    IMMEDIATE, NEXT_BILLING_CYCLE, ProrationResult, calculate_proration, remaining_days_in_cycle,
)
from billing.utils.time_helpers import from_db_naive, now_utc
from billing.utils.zarinpal import MIN_AMOUNT, GatewayResult

logger = logging.getLogger(__name__)

KIND_INITIAL = "initial"
KIND_RECURRING = "recurring"
KIND_PLAN_CHANGE = "plan_change"


@dataclass
class SubscriptionResult:
    subscription: billing_db.Subscription
    payment: Optional[billing_db.Payment] = None
    charged: bool = False
    payment_url: Optional[str] = None  # one-off checkout when no contract is used
    failure_code: Optional[int] = None
    failure_message: Optional[str] = None

    @property
    def status(self) -> str:
        return self.subscription.status


@dataclass
class PlanChangeResult:
    subscription: billing_db.Subscription
    proration: ProrationResult
    applied: bool
    payment: Optional[billing_db.Payment] = None
    scheduled_for: Optional[datetime] = None
    failure_code: Optional[int] = None
    failure_message: Optional[str] = None


def failure_reason(result: GatewayResult) -> str:
    return f"[{result.code}] {result.message}" if result.code else (result.message or "charge failed")


class SubscriptionService:
    def __init__(
        self,
        repo: billing_db.BillingRepository,
        gateway,
        catalog: ProductCatalog,
        *,
        dispatcher=None,
        clock: Callable[[], datetime] = now_utc,
        max_retries: int = BILLING_MAX_RETRIES,
        period_days: int = BILLING_PERIOD_DAYS,
        callback_url: Optional[str] = None,
    ):
        self.repo = repo
        self.gateway = gateway
        self.catalog = catalog
        self.dispatcher = dispatcher
        self.clock = clock
        self.max_retries = max_retries
        self.period_days = period_days
        self.callback_url = callback_url or f"{CALLBACK_BASE_URL}/billing/callback"

    async def _emit(self, event_type: str, data) -> None:
        await events.emit_safely(self.dispatcher, event_type, data)

    # ──────────────────────────────────────────────────────────────────────
    # helpers
    # ──────────────────────────────────────────────────────────────────────
    def _owned(self, user_id: int, subscription_id: str) -> billing_db.Subscription:
        sub = self.repo.subscription_get(subscription_id)
        if sub is None or sub.user_id != user_id:
            raise NotFoundError(f"subscription {subscription_id} not found")
        return sub

    def usable_contract(self, user_id: int, contract_id: Optional[str]) -> Optional[billing_db.PaymentMethod]:
        """The given contract (or the user's primary one) if it is active and signed."""
        contract = self.repo.contract_get(contract_id) if contract_id else self.repo.contract_get_primary(user_id)
        if contract is None or contract.user_id != user_id:
            return None
        if contract.contract_status != billing_db.CONTRACT_ACTIVE or not contract.is_active:
            return None
        if not contract.contract_signature:
            return None
        expires = from_db_naive(contract.expires_at)
        if expires is not None and expires <= self.clock():
            return None
        return contract

    def next_billing_date(self, billing_period: str, start: datetime) -> Optional[datetime]:
        return start + timedelta(days=self.period_days) if billing_period == MONTHLY else None

    def charge(self, payment: billing_db.Payment, contract: billing_db.PaymentMethod, *,
               description: str) -> GatewayResult:
        """
        Direct-debit charge for a pending payment. The authority is stored as soon
        as the gateway issues it. Gateway and input errors come back as a failed
        GatewayResult; only GatewayAuthError propagates.
        """
        try:
            return self.gateway.charge(
                signature=contract.contract_signature,
                amount=payment.amount,
                description=description,
                callback_url=self.callback_url,
                metadata={
                    "payment_id": payment.id,
                    "subscription_id": payment.subscription_id,
                    "product_id": payment.product_id,
                },
                on_authority=lambda authority: self.repo.payment_set_authority(payment.id, authority),
            )
        except GatewayAuthError:
            raise
        except GatewayError as e:
            logger.warning("Charge for payment %s raised %s", payment.id, e)
            return GatewayResult(False, e.code or 0, e.message, {}, e.category)
        except ValidationError as e:
            logger.warning("Charge for payment %s rejected before the gateway: %s", payment.id, e)
            return GatewayResult(False, 0, str(e), {}, "permanent")

    async def settle_charge(
        self,
        payment: billing_db.Payment,
        result: GatewayResult,
        *,
        contract: Optional[billing_db.PaymentMethod] = None,
        next_retry_at: Optional[datetime] = None,
    ) -> billing_db.Payment:
        """Persists the outcome of charge() and emits payment.succeeded / payment.failed."""
        now = self.clock()
        authority = result.data.get("authority")
        if result.success:
            rec, changed = self.repo.payment_mark_completed(
                payment.id, now=now, ref_id=result.data.get("ref_id"), authority=authority,
            )
            if contract is not None:
                self.repo.contract_touch_last_used(contract.id, now=now)
            if changed:
                await self._emit(events.PAYMENT_SUCCEEDED, events.payment_data(rec))
            return rec
        rec, changed = self.repo.payment_mark_failed(
            payment.id, now=now, reason=failure_reason(result), next_retry_at=next_retry_at, authority=authority,
        )
        if changed:
            await self._emit(events.PAYMENT_FAILED, events.payment_data(rec))
        return rec

    def _fail_on_auth_error(self, payment: billing_db.Payment, exc: GatewayAuthError,
                            *, retry_count: Optional[int] = None) -> None:
        self.repo.payment_mark_failed(payment.id, now=self.clock(), reason=f"gateway auth error: {exc}",
                                      next_retry_at=None, retry_count=retry_count)

    # ──────────────────────────────────────────────────────────────────────
    # create / activate
    # ──────────────────────────────────────────────────────────────────────
    async def create_subscription(self, *, user_id: int, product_id: str,
                                  contract_id: Optional[str] = None) -> SubscriptionResult:
        """
        Creates a pending subscription with its initial payment and charges it.
        A pending subscription left over from a failed first charge is reused.
        """
        product = self.catalog.require_active(product_id)
        if self.repo.subscription_find(user_id=user_id, product_id=product.id, status=billing_db.SUB_ACTIVE):
            raise SubscriptionConflict(f"user {user_id} already has an active {product.id} subscription")

        contract = self.usable_contract(user_id, contract_id)
        if contract_id and contract is None:
            raise ValidationError("direct debit contract is not active", field="contract_id")
        if product.is_recurring and contract is None:
            raise ValidationError("an active direct debit contract is required for recurring products",
                                  field="contract_id")

        now = self.clock()
        sub = self.repo.subscription_find(user_id=user_id, product_id=product.id, status=billing_db.SUB_PENDING)
        payment = None
        if sub is not None:
            if self.repo.payment_pending_for_subscription(sub.id) is not None:
                raise ConcurrencyConflict(f"subscription {sub.id} already has a payment in flight")
            failed = self.repo.payment_latest_failed(sub.id, kind=KIND_INITIAL)
            if (failed is not None and failed.amount == product.price
                    and failed.retry_count < failed.max_retries):
                payment = self.repo.payment_reopen_for_retry(failed.id, now=now)
            if contract is not None and sub.direct_debit_contract_id != contract.id:
                sub = self.repo.subscription_set_contract(sub.id, contract_id=contract.id, now=now) or sub
            logger.info("Reusing pending subscription %s for user %s", sub.id, user_id)
        else:
            sub = self.repo.subscription_create(
                user_id=user_id,
                product_id=product.id,
                billing_period=product.billing_period,
                price=product.price,
                contract_id=contract.id if contract else None,
                metadata=SubscriptionMetadata(state=PendingInfo(requested_at=now)),
                now=now,
            )
            logger.info("Subscription %s created for user %s (%s)", sub.id, user_id, product.id)
            await self._emit(events.SUBSCRIPTION_CREATED, events.subscription_data(sub))

        if payment is None:
            payment = self.repo.payment_create_pending(
                user_id=user_id,
                subscription_id=sub.id,
                product_id=product.id,
                amount=product.price,
                kind=KIND_INITIAL,
                max_retries=self.max_retries,
                now=now,
            )

        if contract is None:
            return self._start_checkout(sub, payment, product)

        try:
            result = self.charge(payment, contract, description=f"Subscription: {product.name}")
        except GatewayAuthError as e:
            self._fail_on_auth_error(payment, e)
            raise
        payment = await self.settle_charge(payment, result, contract=contract)
        if not result.success:
            return SubscriptionResult(sub, payment, charged=False, failure_code=result.code,
                                      failure_message=result.message)

        sub = await self.activate_from_payment(payment.id) or sub
        return SubscriptionResult(sub, payment, charged=True)

    def _start_checkout(self, sub: billing_db.Subscription, payment: billing_db.Payment,
                        product: Product) -> SubscriptionResult:
        """One-off product without a contract: redirect checkout, settled later by the webhook."""
        result = self.gateway.request_payment(
            amount=payment.amount,
            description=f"Purchase: {product.name}",
            callback_url=self.callback_url,
            metadata={"payment_id": payment.id, "subscription_id": sub.id},
        )
        if not result.success or not result.data.get("authority"):
            if result.is_auth_error:
                self._fail_on_auth_error(payment, result.to_exception())
                raise result.to_exception()
            rec, _ = self.repo.payment_mark_failed(payment.id, now=self.clock(), reason=failure_reason(result),
                                                   next_retry_at=None)
            return SubscriptionResult(sub, rec, charged=False, failure_code=result.code,
                                      failure_message=result.message)
        authority = result.data["authority"]
        self.repo.payment_set_authority(payment.id, authority)
        return SubscriptionResult(sub, self.repo.payment_get(payment.id), charged=False,
                                  payment_url=self.gateway.start_pay_url(authority))

    async def activate_from_payment(self, payment_id: str) -> Optional[billing_db.Subscription]:
        """
        pending -> active once the payment is completed. Idempotent: a subscription
        that is no longer pending is returned unchanged.
        """
        payment = self.repo.payment_get(payment_id)
        if payment is None or payment.status != billing_db.PAY_COMPLETED or not payment.subscription_id:
            return None
        sub = self.repo.subscription_get(payment.subscription_id)
        if sub is None or sub.status != billing_db.SUB_PENDING:
            return sub

        now = self.clock()
        meta = sub.meta
        meta.state = ActiveInfo(activated_at=now, activation_payment_id=payment.id)
        sub = self.repo.subscription_activate(
            sub.id, now=now, next_billing_date=self.next_billing_date(sub.billing_period, now), metadata=meta,
        )
        if sub is not None and sub.status == billing_db.SUB_ACTIVE:
            logger.info("Subscription %s active (payment %s, next billing %s)",
                        sub.id, payment.id, sub.next_billing_date)
            await self._emit(events.SUBSCRIPTION_ACTIVATED, events.subscription_data(sub))
        return sub

    # ──────────────────────────────────────────────────────────────────────
    # cancel / resubscribe / expire
    # ──────────────────────────────────────────────────────────────────────
    async def cancel_subscription(self, *, user_id: int, subscription_id: str,
                                  reason: Optional[str] = None) -> billing_db.Subscription:
        """active -> canceled. The contract is left alone: other subscriptions may use it."""
        sub = self._owned(user_id, subscription_id)
        if sub.status != billing_db.SUB_ACTIVE:
            raise InvalidTransition("subscription", sub.status, "cancel")
        closed = self.repo.subscription_close(sub.id, status=billing_db.SUB_CANCELED, now=self.clock(),
                                              reason=reason or "user_requested")
        if closed is None or closed.status != billing_db.SUB_CANCELED:
            raise InvalidTransition("subscription", closed.status if closed else "missing", "cancel")
        logger.info("Subscription %s canceled by user %s", sub.id, user_id)
        await self._emit(events.SUBSCRIPTION_CANCELED, events.subscription_data(closed))
        return closed

    async def resubscribe(self, *, user_id: int, subscription_id: str) -> SubscriptionResult:
        """
        Only from canceled. Creates a NEW subscription for the same product, on the
        old contract if it is still active, else on the primary one.
        """
        old = self._owned(user_id, subscription_id)
        if old.status != billing_db.SUB_CANCELED:
            raise InvalidTransition("subscription", old.status, "resubscribe")
        contract = self.usable_contract(user_id, old.direct_debit_contract_id) if old.direct_debit_contract_id else None
        if contract is None:
            contract = self.usable_contract(user_id, None)
        return await self.create_subscription(user_id=user_id, product_id=old.product_id,
                                              contract_id=contract.id if contract else None)

    async def expire_subscription(self, subscription_id: str, reason: str) -> Optional[billing_db.Subscription]:
        """active -> expired (terminal). Scheduler only."""
        sub = self.repo.subscription_get(subscription_id)
        if sub is None or sub.status != billing_db.SUB_ACTIVE:
            return sub
        closed = self.repo.subscription_close(sub.id, status=billing_db.SUB_EXPIRED, now=self.clock(), reason=reason)
        if closed is not None and closed.status == billing_db.SUB_EXPIRED:
            logger.warning("Subscription %s expired: %s", sub.id, reason)
            await self._emit(events.SUBSCRIPTION_EXPIRED, events.subscription_data(closed))
        return closed

    def record_billing_failure(self, subscription_id: str, reason: str) -> int:
        """Bumps the cross-cycle failure counter; returns the new value."""
        sub = self.repo.subscription_get(subscription_id)
        if sub is None:
            return 0
        now = self.clock()
        meta = sub.meta
        count = meta.record_failure(reason, now)
        self.repo.subscription_save_metadata(sub.id, meta, now=now)
        return count

    # ──────────────────────────────────────────────────────────────────────
    # plan changes
    # ──────────────────────────────────────────────────────────────────────
    async def change_plan(self, *, user_id: int, subscription_id: str, new_product_id: str,
                          effective: str = IMMEDIATE) -> PlanChangeResult:
        sub = self._owned(user_id, subscription_id)
        if sub.status != billing_db.SUB_ACTIVE:
            raise InvalidTransition("subscription", sub.status, "change plan of")
        product = self.catalog.require_active(new_product_id)
        if product.id == sub.product_id:
            raise ValidationError("subscription is already on this product", field="new_product_id")
        if product.billing_period != sub.billing_period:
            raise ValidationError("plan changes must keep the billing period", field="new_product_id")
        if self.repo.subscription_find(user_id=user_id, product_id=product.id, status=billing_db.SUB_ACTIVE):
            raise SubscriptionConflict(f"user {user_id} already has an active {product.id} subscription")

        now = self.clock()
        remaining = remaining_days_in_cycle(sub.next_billing_date, now)
        proration = calculate_proration(sub.current_price, product.price, self.period_days, remaining, effective)

        if effective == NEXT_BILLING_CYCLE:
            if sub.next_billing_date is None:
                raise ValidationError("subscription has no next billing cycle", field="effective")
            meta = sub.meta
            scheduled_for = from_db_naive(sub.next_billing_date)
            meta.state = PlanChangePending(
                new_product_id=product.id,
                new_price=product.price,
                new_billing_period=product.billing_period,
                change_type=proration.change_type,
                requested_at=now,
                scheduled_for=scheduled_for,
            )
            self.repo.subscription_save_metadata(sub.id, meta, now=now)
            logger.info("Plan change %s -> %s scheduled for %s (subscription %s)",
                        sub.product_id, product.id, scheduled_for, sub.id)
            return PlanChangeResult(self.repo.subscription_get(sub.id), proration, applied=False,
                                    scheduled_for=scheduled_for)

        if not proration.charge_now:
            # downgrade / lateral: nothing due now
            updated = await self._apply_plan(sub, product, effective=IMMEDIATE, proration_amount=0, payment_id=None)
            return PlanChangeResult(updated, proration, applied=True)
        if proration.amount < MIN_AMOUNT:
            # an upgrade is applied only after it is paid; the gateway refuses this amount
            logger.info("Upgrade of subscription %s not applied: proration %s below gateway minimum %s",
                        sub.id, proration.amount, MIN_AMOUNT)
            return PlanChangeResult(sub, proration, applied=False,
                                    failure_message=f"upgrade amount {proration.amount} is below the gateway "
                                                    f"minimum {MIN_AMOUNT}; use {NEXT_BILLING_CYCLE}")

        contract = self.usable_contract(user_id, sub.direct_debit_contract_id)
        if contract is None:
            raise ValidationError("an active direct debit contract is required to charge the upgrade",
                                  field="contract_id")
        payment = self.repo.payment_create_pending(
            user_id=user_id,
            subscription_id=sub.id,
            product_id=product.id,
            amount=proration.amount,
            kind=KIND_PLAN_CHANGE,
            max_retries=1,
            now=now,
        )
        try:
            result = self.charge(payment, contract, description=f"Upgrade to {product.name}")
        except GatewayAuthError as e:
            self._fail_on_auth_error(payment, e)
            raise
        payment = await self.settle_charge(payment, result, contract=contract)
        if not result.success:
            logger.info("Upgrade of subscription %s not applied: %s", sub.id, failure_reason(result))
            return PlanChangeResult(sub, proration, applied=False, payment=payment,
                                    failure_code=result.code, failure_message=result.message)

        updated = await self._apply_plan(sub, product, effective=IMMEDIATE, proration_amount=proration.amount,
                                         payment_id=payment.id)
        return PlanChangeResult(updated, proration, applied=True, payment=payment)

    async def _apply_plan(self, sub: billing_db.Subscription, product: Product, *, effective: str,
                          proration_amount: int, payment_id: Optional[str]) -> billing_db.Subscription:
        now = self.clock()
        meta = sub.meta
        meta.plan_changes.append(PlanChange(
            from_product_id=sub.product_id,
            to_product_id=product.id,
            from_price=sub.current_price,
            to_price=product.price,
            changed_at=now,
            effective_date=effective,
            proration_amount=proration_amount,
            payment_id=payment_id,
        ))
        if meta.pending_plan_change is not None:
            meta.state = ActiveInfo(activated_at=from_db_naive(sub.start_date))
        updated = self.repo.subscription_apply_plan(
            sub.id, product_id=product.id, price=product.price, billing_period=product.billing_period,
            metadata=meta, now=now,
        )
        logger.info("Subscription %s moved %s -> %s (%s, proration=%s)",
                    sub.id, sub.product_id, product.id, effective, proration_amount)
        data: Dict[str, Any] = events.subscription_data(updated)
        data["previousProductId"] = sub.product_id
        data["prorationAmount"] = proration_amount
        await self._emit(events.SUBSCRIPTION_PLAN_CHANGED, data)
        return updated

    async def apply_scheduled_plan_change(self, sub: billing_db.Subscription) -> billing_db.Subscription:
        """
        Applies a PlanChangePending whose date has come. An unavailable product or a
        conflicting active subscription drops the scheduled change.
        """
        meta = sub.meta
        pending = meta.pending_plan_change
        if pending is None:
            return sub
        now = self.clock()
        if pending.scheduled_for is not None and pending.scheduled_for > now:
            return sub
        product = self.catalog.get(pending.new_product_id)
        if product is None or not product.is_active:
            logger.warning("Dropping scheduled plan change of %s: product %s unavailable",
                           sub.id, pending.new_product_id)
            meta.state = ActiveInfo(activated_at=from_db_naive(sub.start_date))
            self.repo.subscription_save_metadata(sub.id, meta, now=now)
            return self.repo.subscription_get(sub.id)
        try:
            return await self._apply_plan(sub, product, effective=NEXT_BILLING_CYCLE, proration_amount=0,
                                          payment_id=None)
        except SubscriptionConflict as e:
            logger.warning("Dropping scheduled plan change of %s: %s", sub.id, e)
            meta.state = ActiveInfo(activated_at=from_db_naive(sub.start_date))
            self.repo.subscription_save_metadata(sub.id, meta, now=now)
            return self.repo.subscription_get(sub.id)

    # ──────────────────────────────────────────────────────────────────────
    # read
    # ──────────────────────────────────────────────────────────────────────
    def list_subscriptions(self, user_id: int) -> List[billing_db.Subscription]:
        return self.repo.subscription_list_for_user(user_id)

    def get_subscription(self, user_id: int, subscription_id: str) -> billing_db.Subscription:
        return self._owned(user_id, subscription_id)
