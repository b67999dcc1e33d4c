# payman_billing/billing/handlers/contract_handler.py
"""
Direct-debit (Payman) contract lifecycle:

    pending_signature -> active | cancelled_by_user | verification_failed
    active -> cancelled_by_user            (explicit cancel)

Signing happens out of band at the user's bank, so the flow is two calls:
initiate_contract() before the redirect and verify_contract() from the callback.
verify_contract() is replay-safe: browsers retry redirects and the gateway may
call back more than once.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from billing.handlers import webhook_dispatcher as events
from billing.utils import billing_db
from billing.utils.errors import (
    GatewayUnavailable, InvalidMobileFormat, InvalidTransition, NotFoundError, ValidationError,
)
from billing.utils.time_helpers import now_utc

logger = logging.getLogger(__name__)

MOBILE_RE = re.compile(r"^(?:\+98|0)?9\d{9}$")
SSN_RE = re.compile(r"^\d{10}$")

# outcomes of verify_contract
ACTIVE = "active"
ALREADY_ACTIVE = "already_active"
CANCELLED_BY_USER = "cancelled_by_user"
VERIFICATION_FAILED = "verification_failed"


@dataclass
class Bank:
    name: str
    slug: str
    bank_code: str
    max_daily_amount: Optional[int] = None
    max_daily_count: Optional[int] = None


@dataclass
class ContractInitiation:
    contract_id: str
    payman_authority: str
    banks: List[Bank]
    signing_url_template: str
    expires_at: datetime


@dataclass
class ContractVerification:
    outcome: str  # active|already_active|cancelled_by_user|verification_failed
    payment_method_id: Optional[str]
    is_primary: bool = False
    code: Optional[int] = None
    message: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.outcome in (ACTIVE, ALREADY_ACTIVE)


@dataclass
class ContractCancellation:
    contract_id: str
    canceled_subscription_ids: List[str] = field(default_factory=list)
    new_primary_id: Optional[str] = None


def normalize_mobile(mobile: str) -> str:
    """'+989121234567' / '9121234567' / '09121234567' -> '09121234567'"""
    raw = (mobile or "").strip().replace(" ", "").replace("-", "")
    if not MOBILE_RE.match(raw):
        raise InvalidMobileFormat(mobile)
    return "0" + raw[-10:]


def validate_contract_request(*, ssn: Optional[str], duration_days: int, max_daily_count: int,
                              max_monthly_count: int, max_amount: int) -> None:
    if ssn is not None and not SSN_RE.match(ssn):
        raise ValidationError("National ID must be 10 digits", field="ssn")
    if not 30 <= duration_days <= 3650:
        raise ValidationError("Contract duration must be between 30 and 3650 days", field="duration_days")
    if not 1 <= max_daily_count <= 1000:
        raise ValidationError("max_daily_count must be between 1 and 1000", field="max_daily_count")
    if not 1 <= max_monthly_count <= 10000:
        raise ValidationError("max_monthly_count must be between 1 and 10000", field="max_monthly_count")
    if not 100_000 <= max_amount <= 500_000_000:
        raise ValidationError("max_amount must be between 100,000 and 500,000,000 Rials", field="max_amount")


def _parse_banks(raw_banks) -> List[Bank]:
    banks: List[Bank] = []
    for b in raw_banks or []:
        if not isinstance(b, dict) or not b.get("bank_code"):
            continue
        banks.append(Bank(
            name=str(b.get("name") or ""),
            slug=str(b.get("slug") or ""),
            bank_code=str(b["bank_code"]),
            max_daily_amount=int(b["max_daily_amount"]) if b.get("max_daily_amount") is not None else None,
            max_daily_count=int(b["max_daily_count"]) if b.get("max_daily_count") is not None else None,
        ))
    return banks


class ContractService:
    def __init__(self, repo: billing_db.BillingRepository, gateway, *, dispatcher=None,
                 clock: Callable[[], datetime] = now_utc):
        self.repo = repo
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.clock = clock

    async def _emit(self, event_type: str, data) -> None:
        await events.emit_safely(self.dispatcher, event_type, data)

    # ──────────────────────────────────────────────────────────────────────
    # initiate
    # ──────────────────────────────────────────────────────────────────────
    async def initiate_contract(
        self,
        *,
        user_id: int,
        mobile: str,
        callback_url: str,
        ssn: Optional[str] = None,
        duration_days: int = 365,
        max_daily_count: int = 10,
        max_monthly_count: int = 100,
        max_amount: int = 50_000_000,
    ) -> ContractInitiation:
        """
        Requests a contract and the bank list; persists a pending_signature record.
        Input is validated before any network call.
        """
        mobile_norm = normalize_mobile(mobile)
        validate_contract_request(ssn=ssn, duration_days=duration_days, max_daily_count=max_daily_count,
                                  max_monthly_count=max_monthly_count, max_amount=max_amount)
        if not callback_url:
            raise ValidationError("callback_url is required", field="callback_url")

        now = self.clock()
        expires_at = now + timedelta(days=duration_days)
        result = self.gateway.request_contract(
            mobile=mobile_norm,
            ssn=ssn,
            expire_at=expires_at.strftime("%Y-%m-%d %H:%M:%S"),
            max_daily_count=max_daily_count,
            max_monthly_count=max_monthly_count,
            max_amount=max_amount,
            callback_url=callback_url,
        )
        if not result.success and not result.is_transient:
            # auth -> GatewayAuthError, business -> GatewayBusinessError
            raise result.to_exception()
        authority = result.data.get("payman_authority") if result.success else None
        if not authority:
            logger.warning("Contract request for user %s returned no authority (code=%s)", user_id, result.code)
            raise GatewayUnavailable("Direct debit service temporarily unavailable", code=result.code)

        banks_result = self.gateway.get_bank_list()
        if banks_result.is_auth_error:
            raise banks_result.to_exception()
        banks = _parse_banks(banks_result.data.get("banks")) if banks_result.success else []
        if not banks:
            logger.warning("Bank list empty for user %s (code=%s)", user_id, banks_result.code)
            raise GatewayUnavailable("Direct debit service temporarily unavailable", code=banks_result.code)

        rec = self.repo.contract_create_pending(
            user_id=user_id,
            payman_authority=authority,
            mobile=mobile_norm,
            duration_days=duration_days,
            max_daily_amount=max_amount,
            max_daily_count=max_daily_count,
            max_monthly_count=max_monthly_count,
            expires_at=expires_at,
            now=now,
        )
        logger.info("Contract %s initiated for user %s (banks=%d)", rec.id, user_id, len(banks))
        return ContractInitiation(
            contract_id=rec.id,
            payman_authority=authority,
            banks=banks,
            signing_url_template=self.gateway.signing_url_template.replace("{PAYMAN_AUTHORITY}", authority),
            expires_at=expires_at,
        )

    # ──────────────────────────────────────────────────────────────────────
    # verify
    # ──────────────────────────────────────────────────────────────────────
    async def verify_contract(self, *, user_id: int, authority: str, user_status: str,
                              contract_id: str) -> ContractVerification:
        status = (user_status or "").strip().upper()
        if status not in ("OK", "NOK"):
            raise ValidationError(f"status must be OK or NOK, got {user_status!r}", field="status")
        if not authority:
            raise ValidationError("authority is required", field="authority")

        rec = self.repo.contract_get(contract_id)
        if rec is not None and rec.user_id != user_id:
            rec = None

        if rec is None:
            # pending record may have been folded into an identical active contract earlier
            return await self._verify_replay(user_id=user_id, authority=authority, contract_id=contract_id,
                                             status=status)

        if rec.contract_status == billing_db.CONTRACT_ACTIVE:
            return ContractVerification(ALREADY_ACTIVE, rec.id, is_primary=rec.is_primary)
        if rec.contract_status in (billing_db.CONTRACT_CANCELLED, billing_db.CONTRACT_VERIFICATION_FAILED):
            return ContractVerification(rec.contract_status, rec.id,
                                        message="contract is already closed")
        if rec.payman_authority != authority:
            raise ValidationError("authority does not match the contract", field="authority")

        now = self.clock()
        if status == "NOK":
            self.repo.contract_mark_terminal(rec.id, status=billing_db.CONTRACT_CANCELLED, now=now)
            logger.info("Contract %s cancelled by user %s at the bank", rec.id, user_id)
            return ContractVerification(CANCELLED_BY_USER, rec.id, message="Contract signing was cancelled")

        result = self.gateway.verify_contract_and_get_signature(authority)
        if not result.success and result.category != "permanent":
            # auth / transient: leave the record pending so the callback can be replayed
            raise result.to_exception()
        signature = result.data.get("signature") if result.success else None
        if not signature:
            self.repo.contract_mark_terminal(rec.id, status=billing_db.CONTRACT_VERIFICATION_FAILED, now=now)
            logger.warning("Contract %s verification failed: code=%s message=%s", rec.id, result.code, result.message)
            return ContractVerification(VERIFICATION_FAILED, rec.id, code=result.code,
                                        message=result.message or "No signature returned")

        existing = self.repo.contract_find_active_by_signature(user_id, signature)
        if existing is not None and existing.id != rec.id:
            self.repo.contract_delete(rec.id)
            logger.info("Contract %s duplicates active contract %s; pending record removed", rec.id, existing.id)
            return ContractVerification(ALREADY_ACTIVE, existing.id, is_primary=existing.is_primary)

        promoted = self.repo.contract_promote(rec.id, signature=signature, now=now)
        if promoted is None:
            raise NotFoundError(f"contract {contract_id} disappeared during verification")
        if promoted.contract_status != billing_db.CONTRACT_ACTIVE:
            return ContractVerification(promoted.contract_status, promoted.id)
        logger.info("Contract %s active for user %s (primary=%s)", promoted.id, user_id, promoted.is_primary)
        await self._emit(events.CONTRACT_ACTIVATED, events.contract_data(promoted))
        return ContractVerification(ACTIVE, promoted.id, is_primary=promoted.is_primary, code=result.code)

    async def _verify_replay(self, *, user_id: int, authority: str, contract_id: str,
                             status: str) -> ContractVerification:
        if status == "NOK":
            raise NotFoundError(f"contract {contract_id} not found")
        result = self.gateway.verify_contract_and_get_signature(authority)
        signature = result.data.get("signature") if result.success else None
        existing = self.repo.contract_find_active_by_signature(user_id, signature) if signature else None
        if existing is None:
            raise NotFoundError(f"contract {contract_id} not found")
        return ContractVerification(ALREADY_ACTIVE, existing.id, is_primary=existing.is_primary)

    # ──────────────────────────────────────────────────────────────────────
    # cancel / read
    # ──────────────────────────────────────────────────────────────────────
    async def cancel_contract(self, *, user_id: int, contract_id: str) -> ContractCancellation:
        """
        Revokes the mandate at the gateway, then closes it locally together with
        the active subscriptions billed through it.
        """
        rec = self.repo.contract_get(contract_id)
        if rec is None or rec.user_id != user_id:
            raise NotFoundError(f"contract {contract_id} not found")
        if rec.contract_status != billing_db.CONTRACT_ACTIVE:
            raise InvalidTransition("contract", rec.contract_status, "cancel")

        self.gateway.cancel_contract(rec.contract_signature).raise_for_error()

        now = self.clock()
        closed, sub_ids = self.repo.contract_cancel(contract_id, now=now)
        primary = self.repo.contract_get_primary(user_id)
        logger.info("Contract %s cancelled by user %s; subscriptions closed: %s", contract_id, user_id, sub_ids)

        if closed is not None:
            await self._emit(events.CONTRACT_CANCELLED, events.contract_data(closed))
        for sub_id in sub_ids:
            sub = self.repo.subscription_get(sub_id)
            if sub is not None:
                await self._emit(events.SUBSCRIPTION_CANCELED, events.subscription_data(sub))
        return ContractCancellation(contract_id=contract_id, canceled_subscription_ids=sub_ids,
                                    new_primary_id=primary.id if primary else None)

    def list_contracts(self, user_id: int, *, active_only: bool = False) -> List[billing_db.PaymentMethod]:
        return self.repo.contract_list_for_user(user_id, active_only=active_only)

    def get_primary_contract(self, user_id: int) -> Optional[billing_db.PaymentMethod]:
        return self.repo.contract_get_primary(user_id)
