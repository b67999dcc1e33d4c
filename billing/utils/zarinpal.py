# payman_billing/billing/utils/zarinpal.py
"""
ZarinPal REST v4 client: Payman (direct debit) contracts + payments.

Every call returns a GatewayResult carrying the gateway's own numeric code and
message; HTTP status alone is never trusted. Network failures and unparseable
responses raise GatewayTransientError.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

import httpx

from billing.config import (
    ZARINPAL_ACCESS_TOKEN, ZARINPAL_MERCHANT_ID, ZARINPAL_SANDBOX, ZARINPAL_TIMEOUT_SEC,
)
from billing.utils.errors import (
    GatewayAuthError, GatewayBusinessError, GatewayError, GatewayTransientError,
    ValidationError,
)

logger = logging.getLogger(__name__)

PRODUCTION_BASE_URL = "https://api.zarinpal.com"
SANDBOX_BASE_URL = "https://sandbox.zarinpal.com"
SIGNING_URL_TEMPLATE = "https://www.zarinpal.com/pg/StartPayman/{PAYMAN_AUTHORITY}/{BANK_CODE}"
SANDBOX_SIGNING_URL_TEMPLATE = "https://sandbox.zarinpal.com/pg/StartPayman/{PAYMAN_AUTHORITY}/{BANK_CODE}"
START_PAY_URL = "https://www.zarinpal.com/pg/StartPay/{authority}"
SANDBOX_START_PAY_URL = "https://sandbox.zarinpal.com/pg/StartPay/{authority}"
PLACEHOLDER_MERCHANT_ID = "00000000-0000-0000-0000-000000000000"

CODE_OK = 100
CODE_ALREADY_VERIFIED = 101
MIN_AMOUNT = 1000  # Rials

AUTH_CODES = frozenset({-74, -80, -10, -15, -40})
TRANSIENT_CODES = frozenset({-11, -12, -17, -30})

CATEGORY_AUTH = "auth"
CATEGORY_TRANSIENT = "transient"
CATEGORY_PERMANENT = "permanent"

ERROR_MESSAGES: Dict[int, str] = {
    -9: "Validation error in request",
    -10: "Terminal is not valid, check merchant id or IP",
    -11: "Terminal is not active",
    -12: "Too many attempts, try again later",
    -15: "Terminal is suspended",
    -17: "Terminal access level is not sufficient",
    -30: "Terminal does not allow this service",
    -33: "Amount is below the allowed minimum",
    -34: "Amount exceeds the contract or daily limit",
    -40: "Invalid extra params for this terminal",
    -50: "Session amount does not match the verified amount",
    -51: "Session is not valid, payment was not successful",
    -52: "Bank processing error",
    -53: "Session does not belong to this merchant",
    -54: "Invalid authority",
    -55: "Manual transaction not found",
    -74: "Invalid merchant id",
    -80: "Merchant does not have access to direct debit",
    CODE_ALREADY_VERIFIED: "Transaction already verified",
}

_MERCHANT_RE = re.compile(r"^[a-f0-9-]{36}$", re.IGNORECASE)


def categorize(code: int) -> str:
    if code in AUTH_CODES:
        return CATEGORY_AUTH
    if code in TRANSIENT_CODES:
        return CATEGORY_TRANSIENT
    return CATEGORY_PERMANENT


_EXC_BY_CATEGORY = {
    CATEGORY_AUTH: GatewayAuthError,
    CATEGORY_TRANSIENT: GatewayTransientError,
    CATEGORY_PERMANENT: GatewayBusinessError,
}


@dataclass
class GatewayResult:
    success: bool
    code: int
    message: str = ""
    data: Dict[str, Any] = field(default_factory=dict)
    category: Optional[str] = None  # None on success

    @classmethod
    def ok(cls, code: int, data: Dict[str, Any], message: str = "") -> "GatewayResult":
        return cls(True, code, message or ERROR_MESSAGES.get(code, "Success"), dict(data or {}), None)

    @classmethod
    def error(cls, code: int, message: Optional[str] = None, data: Optional[Dict[str, Any]] = None) -> "GatewayResult":
        msg = message or ERROR_MESSAGES.get(code) or f"Gateway error {code}"
        return cls(False, code, msg, dict(data or {}), categorize(code))

    @property
    def is_auth_error(self) -> bool:
        return self.category == CATEGORY_AUTH

    @property
    def is_transient(self) -> bool:
        return self.category == CATEGORY_TRANSIENT

    def to_exception(self) -> GatewayError:
        exc_cls = _EXC_BY_CATEGORY.get(self.category or CATEGORY_PERMANENT, GatewayBusinessError)
        return exc_cls(self.message, code=self.code)

    def raise_for_error(self) -> "GatewayResult":
        if not self.success:
            raise self.to_exception()
        return self


def validate_merchant_id(merchant_id: Optional[str], *, sandbox: bool = False) -> None:
    """
    Raises GatewayAuthError for a missing, malformed or placeholder merchant id.
    """
    if not merchant_id:
        raise GatewayAuthError("ZarinPal merchant id is not configured (ZARINPAL_MERCHANT_ID)")
    if not _MERCHANT_RE.match(merchant_id):
        raise GatewayAuthError("ZarinPal merchant id must be UUID formatted")
    if merchant_id == PLACEHOLDER_MERCHANT_ID and not sandbox:
        raise GatewayAuthError("placeholder ZarinPal merchant id cannot be used outside sandbox")


def validate_amount(amount: int) -> None:
    """
    Amount in Rials: positive integer, at least 1,000.
    Raises ValidationError on bad input.
    """
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError(f"Amount must be an integer number of Rials, got: {type(amount).__name__}",
                              field="amount")
    if amount < MIN_AMOUNT:
        raise ValidationError(f"Amount must be at least {MIN_AMOUNT} Rials, got: {amount}", field="amount")


def validate_signature(signature: Optional[str]) -> None:
    if not signature or not isinstance(signature, str):
        raise ValidationError("contract signature cannot be empty", field="signature")
    if len(signature) < 16:
        raise ValidationError(f"contract signature seems too short (length: {len(signature)})", field="signature")


class ZarinPalClient:
    """
    Stateless adapter over the ZarinPal HTTP API. Blocking I/O with an explicit timeout.
    """

    def __init__(
        self,
        merchant_id: str,
        *,
        access_token: Optional[str] = None,
        sandbox: bool = False,
        timeout: float = 15.0,
        base_url: Optional[str] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        validate_merchant_id(merchant_id, sandbox=sandbox)
        self.merchant_id = merchant_id
        self.access_token = access_token
        self.sandbox = sandbox
        self.base_url = (base_url or (SANDBOX_BASE_URL if sandbox else PRODUCTION_BASE_URL)).rstrip("/")
        self.signing_url_template = SANDBOX_SIGNING_URL_TEMPLATE if sandbox else SIGNING_URL_TEMPLATE
        self._http = http_client or httpx.Client(
            timeout=httpx.Timeout(timeout),
            headers={"Accept": "application/json", "Content-Type": "application/json"},
        )

    @classmethod
    def from_env(cls, http_client: Optional[httpx.Client] = None) -> "ZarinPalClient":
        return cls(
            ZARINPAL_MERCHANT_ID,
            access_token=ZARINPAL_ACCESS_TOKEN or None,
            sandbox=ZARINPAL_SANDBOX,
            timeout=ZARINPAL_TIMEOUT_SEC,
            http_client=http_client,
        )

    def close(self) -> None:
        self._http.close()

    # ──────────────────────────────────────────────────────────────────────
    # transport
    # ──────────────────────────────────────────────────────────────────────
    def _request(self, method: str, path: str, *, operation: str, json_body: Optional[Dict[str, Any]] = None,
                 headers: Optional[Dict[str, str]] = None) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            return self._http.request(method, url, json=json_body, headers=headers)
        except httpx.TimeoutException as e:
            logger.warning("ZarinPal %s timed out: %s", operation, e)
            raise GatewayTransientError(f"ZarinPal {operation} timed out") from e
        except httpx.ConnectError as e:
            logger.warning("ZarinPal %s connection failed: %s", operation, e)
            raise GatewayTransientError(f"ZarinPal {operation} connection failed") from e
        except httpx.NetworkError as e:
            logger.warning("ZarinPal %s network error: %s", operation, e)
            raise GatewayTransientError(f"ZarinPal {operation} network error") from e
        except httpx.HTTPError as e:
            logger.warning("ZarinPal %s HTTP error: %s", operation, e)
            raise GatewayTransientError(f"ZarinPal {operation} failed: {e}") from e

    def _parse(
        self,
        response: httpx.Response,
        *,
        operation: str,
        success_codes: Tuple[int, ...] = (CODE_OK,),
        require_code: bool = True,
    ) -> GatewayResult:
        try:
            body = response.json()
        except ValueError as e:
            logger.warning("ZarinPal %s returned non-JSON body (HTTP %s)", operation, response.status_code)
            raise GatewayTransientError(f"ZarinPal {operation}: malformed response (HTTP {response.status_code})") from e
        if not isinstance(body, dict):
            raise GatewayTransientError(f"ZarinPal {operation}: unexpected response shape")

        errors = body.get("errors")
        data = body.get("data")
        data = data if isinstance(data, dict) else {}

        # ZarinPal returns "errors": [] on success and {"code": .., "message": ..} on failure
        if isinstance(errors, dict) and errors.get("code") is not None:
            code = int(errors.get("code"))
            result = GatewayResult.error(code, errors.get("message"), data)
            logger.warning("ZarinPal %s error: code=%s message=%s category=%s",
                           operation, result.code, result.message, result.category)
            return result

        if "code" in data:
            code = int(data["code"])
            if code in success_codes:
                return GatewayResult.ok(code, data, data.get("message") or "")
            result = GatewayResult.error(code, data.get("message"), data)
            logger.warning("ZarinPal %s declined: code=%s message=%s", operation, result.code, result.message)
            return result

        if not require_code and data and response.status_code < 400:
            return GatewayResult.ok(CODE_OK, data)

        if response.status_code >= 500:
            raise GatewayTransientError(f"ZarinPal {operation}: HTTP {response.status_code}")
        raise GatewayTransientError(f"ZarinPal {operation}: response carries neither data nor errors")

    def _post(self, path: str, payload: Dict[str, Any], *, operation: str,
              success_codes: Tuple[int, ...] = (CODE_OK,), headers: Optional[Dict[str, str]] = None) -> GatewayResult:
        body = {"merchant_id": self.merchant_id, **payload}
        response = self._request("POST", path, operation=operation, json_body=body, headers=headers)
        return self._parse(response, operation=operation, success_codes=success_codes)

    # ──────────────────────────────────────────────────────────────────────
    # Payman (direct debit contracts)
    # ──────────────────────────────────────────────────────────────────────
    def request_contract(
        self,
        *,
        mobile: str,
        expire_at: str,
        max_daily_count: int,
        max_monthly_count: int,
        max_amount: int,
        callback_url: str,
        ssn: Optional[str] = None,
    ) -> GatewayResult:
        """
        Step 1 of signing: returns data.payman_authority on success.
        expire_at is "YYYY-MM-DD HH:MM:SS".
        """
        payload: Dict[str, Any] = {
            "mobile": mobile,
            "expire_at": expire_at,
            "max_daily_count": str(max_daily_count),
            "max_monthly_count": str(max_monthly_count),
            "max_amount": str(max_amount),
            "callback_url": callback_url,
        }
        if ssn:
            payload["ssn"] = ssn
        result = self._post("/pg/v4/payman/request.json", payload, operation="request_contract")
        if result.success:
            logger.info("ZarinPal contract requested (authority=%s)", result.data.get("payman_authority"))
        return result

    def get_bank_list(self) -> GatewayResult:
        """data.banks: [{name, slug, bank_code, max_daily_amount, max_daily_count}]"""
        response = self._request("GET", "/pg/v4/payman/banksList.json", operation="get_bank_list")
        return self._parse(response, operation="get_bank_list", require_code=False)

    def verify_contract_and_get_signature(self, payman_authority: str) -> GatewayResult:
        """Step 2 of signing: data.signature on success."""
        return self._post(
            "/pg/v4/payman/verify.json",
            {"payman_authority": payman_authority},
            operation="verify_contract",
        )

    def cancel_contract(self, signature: str) -> GatewayResult:
        return self._post("/pg/v4/payman/cancelContract.json", {"signature": signature}, operation="cancel_contract")

    def signing_url(self, payman_authority: str, bank_code: str) -> str:
        return (self.signing_url_template
                .replace("{PAYMAN_AUTHORITY}", payman_authority)
                .replace("{BANK_CODE}", bank_code))

    # ──────────────────────────────────────────────────────────────────────
    # Payments
    # ──────────────────────────────────────────────────────────────────────
    def start_pay_url(self, authority: str) -> str:
        """Redirect target for a one-off (non direct debit) payment."""
        template = SANDBOX_START_PAY_URL if self.sandbox else START_PAY_URL
        return template.format(authority=authority)

    def request_payment(
        self,
        *,
        amount: int,
        description: str,
        callback_url: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> GatewayResult:
        validate_amount(amount)
        payload: Dict[str, Any] = {
            "amount": amount,
            "description": description[:255],
            "callback_url": callback_url,
        }
        if metadata:
            payload["metadata"] = {k: str(v) for k, v in metadata.items() if v is not None}
        return self._post("/pg/v4/payment/request.json", payload, operation="request_payment")

    def execute_direct_transaction(self, authority: str, signature: str) -> GatewayResult:
        """Charges a requested payment against a signed contract; data.refrence_id on success."""
        return self._post(
            "/pg/v4/payman/checkout.json",
            {"authority": authority, "signature": signature},
            operation="direct_checkout",
        )

    def charge(
        self,
        *,
        signature: str,
        amount: int,
        description: str,
        callback_url: str,
        metadata: Optional[Dict[str, Any]] = None,
        on_authority: Optional[Callable[[str], None]] = None,
    ) -> GatewayResult:
        """
        request_payment + execute_direct_transaction.
        on_authority is called as soon as the gateway issues an authority, before
        the checkout call, so the payment can be reconciled even if checkout never
        answers. Result data always carries "authority" once one was issued.
        """
        validate_signature(signature)
        req = self.request_payment(amount=amount, description=description, callback_url=callback_url,
                                   metadata=metadata)
        if not req.success:
            return req
        authority = req.data.get("authority")
        if not authority:
            return GatewayResult.error(-11, "Gateway returned no payment authority")
        if on_authority is not None:
            on_authority(authority)

        chk = self.execute_direct_transaction(authority, signature)
        data = dict(chk.data)
        data["authority"] = authority
        if not chk.success:
            return GatewayResult(False, chk.code, chk.message, data, chk.category)
        ref_id = chk.data.get("refrence_id") or chk.data.get("ref_id")
        data["ref_id"] = str(ref_id) if ref_id is not None else None
        logger.info("ZarinPal direct charge ok (authority=%s, ref_id=%s, amount=%s)", authority, ref_id, amount)
        return GatewayResult.ok(chk.code, data, chk.message)

    def verify_payment(self, authority: str, amount: int) -> GatewayResult:
        """Server-side verification; 100 and 101 (already verified) both mean paid."""
        return self._post(
            "/pg/v4/payment/verify.json",
            {"authority": authority, "amount": amount},
            operation="verify_payment",
            success_codes=(CODE_OK, CODE_ALREADY_VERIFIED),
        )

    def refund(self, *, authority: str, amount: int, description: str = "refund",
               method: str = "PAYA") -> GatewayResult:
        """
        Refund of a verified payment. Needs the merchant access token.
        """
        if not self.access_token:
            raise GatewayAuthError("ZarinPal access token is not configured (ZARINPAL_ACCESS_TOKEN)")
        validate_amount(amount)
        return self._post(
            "/pg/v4/payment/refund.json",
            {"authority": authority, "amount": amount, "description": description[:255], "method": method},
            operation="refund",
            headers={"Authorization": f"Bearer {self.access_token}"},
        )
