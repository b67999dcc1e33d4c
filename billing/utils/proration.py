# payman_billing/billing/utils/proration.py
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from billing.utils.time_helpers import to_aware_utc

IMMEDIATE = "immediate"
NEXT_BILLING_CYCLE = "next_billing_cycle"
EFFECTIVE_DATES = (IMMEDIATE, NEXT_BILLING_CYCLE)

UPGRADE, DOWNGRADE, LATERAL = "upgrade", "downgrade", "lateral"


@dataclass(frozen=True)
class ProrationResult:
    delta: int           # new_price - old_price
    amount: int          # what to charge now (0 when nothing is due immediately)
    change_type: str     # upgrade|downgrade|lateral
    effective: str

    @property
    def charge_now(self) -> bool:
        return self.amount > 0


def change_type_for(old_price: int, new_price: int) -> str:
    if new_price > old_price:
        return UPGRADE
    if new_price < old_price:
        return DOWNGRADE
    return LATERAL


def calculate_proration(
    old_price: int,
    new_price: int,
    billing_period_days: int,
    remaining_days: int,
    effective: str = IMMEDIATE,
) -> ProrationResult:
    """
    Charge due now when moving between plans mid-cycle.

    Downgrades and lateral moves never charge; the new price applies (now or next
    cycle). An immediate upgrade charges round(delta * remaining / period), half
    up; on or after the billing date (remaining_days <= 0) the full delta is due.
    Next-cycle changes charge nothing now.
    """
    if effective not in EFFECTIVE_DATES:
        raise ValueError(f"effective must be one of {EFFECTIVE_DATES}, got {effective!r}")
    if billing_period_days <= 0:
        raise ValueError("billing_period_days must be positive")
    if old_price < 0 or new_price < 0:
        raise ValueError("prices cannot be negative")

    delta = new_price - old_price
    kind = change_type_for(old_price, new_price)
    if delta <= 0 or effective == NEXT_BILLING_CYCLE:
        return ProrationResult(delta=delta, amount=0, change_type=kind, effective=effective)

    if remaining_days <= 0:
        return ProrationResult(delta=delta, amount=delta, change_type=kind, effective=effective)

    remaining = min(remaining_days, billing_period_days)
    exact = Decimal(delta) * Decimal(remaining) / Decimal(billing_period_days)
    amount = int(exact.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return ProrationResult(delta=delta, amount=amount, change_type=kind, effective=effective)


def remaining_days_in_cycle(next_billing_date: Optional[datetime], now: datetime) -> int:
    """Whole days left until next_billing_date (rounded up), never negative."""
    if next_billing_date is None:
        return 0
    seconds = (to_aware_utc(next_billing_date) - to_aware_utc(now)).total_seconds()
    if seconds <= 0:
        return 0
    return int(math.ceil(seconds / 86400))
