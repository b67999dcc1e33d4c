# payman_billing/billing/utils/metadata.py
"""
Typed subscription metadata.

The `metadata_json` column holds exactly one `SubscriptionMetadata`: a lifecycle
variant (one of the `*Info` classes / `PlanChangePending`, discriminated by `kind`),
the ordered plan-change history and the billing failure counter.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from billing.utils.time_helpers import iso_utc, to_aware_utc


def _dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return to_aware_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


@dataclass
class PendingInfo:
    requested_at: datetime
    kind: str = field(default="pending", init=False)


@dataclass
class ActiveInfo:
    activated_at: datetime
    activation_payment_id: Optional[str] = None
    kind: str = field(default="active", init=False)


@dataclass
class CancelledInfo:
    cancelled_at: datetime
    reason: Optional[str] = None
    kind: str = field(default="cancelled", init=False)


@dataclass
class ExpiredInfo:
    expired_at: datetime
    reason: str  # retry_exhausted|failure_ceiling|contract_cancelled
    kind: str = field(default="expired", init=False)


@dataclass
class PlanChangePending:
    new_product_id: str
    new_price: int
    new_billing_period: str
    change_type: str  # upgrade|downgrade|lateral
    requested_at: datetime
    scheduled_for: Optional[datetime]
    kind: str = field(default="plan_change_pending", init=False)


LifecycleInfo = Union[PendingInfo, ActiveInfo, CancelledInfo, ExpiredInfo, PlanChangePending]

_DATETIME_FIELDS = {
    "pending": ("requested_at",),
    "active": ("activated_at",),
    "cancelled": ("cancelled_at",),
    "expired": ("expired_at",),
    "plan_change_pending": ("requested_at", "scheduled_for"),
}
_VARIANTS = {
    "pending": PendingInfo,
    "active": ActiveInfo,
    "cancelled": CancelledInfo,
    "expired": ExpiredInfo,
    "plan_change_pending": PlanChangePending,
}


@dataclass
class PlanChange:
    from_product_id: str
    to_product_id: str
    from_price: int
    to_price: int
    changed_at: datetime
    effective_date: str  # immediate|next_billing_cycle
    proration_amount: int = 0
    payment_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fromProductId": self.from_product_id,
            "toProductId": self.to_product_id,
            "fromPrice": self.from_price,
            "toPrice": self.to_price,
            "changedAt": iso_utc(self.changed_at),
            "effectiveDate": self.effective_date,
            "prorationAmount": self.proration_amount,
            "paymentId": self.payment_id,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "PlanChange":
        return cls(
            from_product_id=raw["fromProductId"],
            to_product_id=raw["toProductId"],
            from_price=int(raw["fromPrice"]),
            to_price=int(raw["toPrice"]),
            changed_at=_dt(raw["changedAt"]),
            effective_date=raw.get("effectiveDate", "immediate"),
            proration_amount=int(raw.get("prorationAmount") or 0),
            payment_id=raw.get("paymentId"),
        )


@dataclass
class SubscriptionMetadata:
    state: Optional[LifecycleInfo] = None
    plan_changes: List[PlanChange] = field(default_factory=list)
    billing_failures: int = 0
    last_billing_error: Optional[str] = None
    last_billing_error_at: Optional[datetime] = None

    # ---- helpers ----
    @property
    def pending_plan_change(self) -> Optional[PlanChangePending]:
        return self.state if isinstance(self.state, PlanChangePending) else None

    def record_failure(self, reason: str, at: datetime) -> int:
        self.billing_failures += 1
        self.last_billing_error = reason
        self.last_billing_error_at = at
        return self.billing_failures

    # ---- (de)serialization ----
    def to_dict(self) -> Dict[str, Any]:
        state: Optional[Dict[str, Any]] = None
        if self.state is not None:
            # kind is init=False and not in __dict__
            state = {f.name: getattr(self.state, f.name) for f in fields(self.state)}
            for name in _DATETIME_FIELDS[self.state.kind]:
                state[name] = iso_utc(state[name])
        return {
            "state": state,
            "planChanges": [pc.to_dict() for pc in self.plan_changes],
            "billingFailures": self.billing_failures,
            "lastBillingError": self.last_billing_error,
            "lastBillingErrorAt": iso_utc(self.last_billing_error_at),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "SubscriptionMetadata":
        raw = raw or {}
        state = None
        state_raw = raw.get("state")
        if state_raw:
            kind = state_raw.get("kind")
            variant = _VARIANTS.get(kind)
            if variant is None:
                raise ValueError(f"unknown subscription metadata kind: {kind!r}")
            values = {k: v for k, v in state_raw.items() if k != "kind"}
            for name in _DATETIME_FIELDS[kind]:
                values[name] = _dt(values.get(name))
            state = variant(**values)
        return cls(
            state=state,
            plan_changes=[PlanChange.from_dict(x) for x in raw.get("planChanges") or []],
            billing_failures=int(raw.get("billingFailures") or 0),
            last_billing_error=raw.get("lastBillingError"),
            last_billing_error_at=_dt(raw.get("lastBillingErrorAt")),
        )

    @classmethod
    def from_json(cls, text: Optional[str]) -> "SubscriptionMetadata":
        if not text:
            return cls()
        return cls.from_dict(json.loads(text))
