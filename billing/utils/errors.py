# payman_billing/billing/utils/errors.py
"""
Error taxonomy of the billing engine.

Expected business outcomes (user aborted signing, verification refused) are NOT
exceptions: services return result dataclasses for them. Everything here is either
bad input, a conflict the caller must wait out, or an infrastructure failure.
"""
from __future__ import annotations

from typing import Optional


class BillingError(Exception):
    """Base class for all billing errors."""


# ── input ────────────────────────────────────────────────────────────────────
class ValidationError(BillingError, ValueError):
    """Malformed input; raised before any network call."""

    def __init__(self, message: str, *, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class InvalidMobileFormat(ValidationError):
    def __init__(self, mobile: str):
        super().__init__(f"Invalid Iranian mobile number format: {mobile!r}", field="mobile")
        self.mobile = mobile


class NotFoundError(BillingError, LookupError):
    pass


# ── state ────────────────────────────────────────────────────────────────────
class SubscriptionConflict(BillingError):
    """User already has an active subscription for this product."""


class ConcurrencyConflict(BillingError):
    """A pending payment already exists; wait for it to settle instead of retrying."""


class InvalidTransition(BillingError):
    """Operation is not allowed from the record's current state."""

    def __init__(self, entity: str, current: str, operation: str):
        super().__init__(f"cannot {operation} {entity} in status {current!r}")
        self.entity = entity
        self.current = current
        self.operation = operation


class ReconciliationAmbiguous(BillingError):
    """Webhook references a payment we do not know; flagged for manual review."""


# ── gateway ──────────────────────────────────────────────────────────────────
class GatewayError(BillingError):
    category = "permanent"

    def __init__(self, message: str, *, code: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.message = message

    def __str__(self) -> str:
        if self.code is None:
            return self.message
        return f"[{self.code}] {self.message}"


class GatewayAuthError(GatewayError):
    """Merchant credentials are wrong or missing. Fatal, never retried."""
    category = "auth"


class GatewayTransientError(GatewayError):
    """Gateway or network unavailable. Retried by the scheduler backoff."""
    category = "transient"


class GatewayUnavailable(GatewayTransientError):
    """Gateway answered but without the data needed to continue."""


class GatewayBusinessError(GatewayError):
    """Declined / limits exceeded / insufficient funds. Consumes a retry slot."""
    category = "permanent"


# ── webhooks ─────────────────────────────────────────────────────────────────
class WebhookRejected(BillingError):
    """Security gate refusal; maps 1:1 to an HTTP 4xx."""

    def __init__(self, status: int, reason: str):
        super().__init__(reason)
        self.status = status
        self.reason = reason
