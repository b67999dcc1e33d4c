"""
Tests for the ZarinPal client over httpx.MockTransport.
"""
import json

import httpx
import pytest

from billing.utils.errors import (
    GatewayAuthError, GatewayBusinessError, GatewayTransientError, ValidationError,
)
from billing.utils.zarinpal import (
    PLACEHOLDER_MERCHANT_ID, GatewayResult, ZarinPalClient, categorize, validate_merchant_id,
)

MERCHANT = "1344b5d4-0048-11e8-94db-005056a205be"
SIGNATURE = "SIG_" + "f" * 60


def make_client(handler, **kwargs) -> ZarinPalClient:
    return ZarinPalClient(
        MERCHANT,
        sandbox=True,
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        **kwargs,
    )


def ok(data):
    return httpx.Response(200, json={"data": data, "errors": []})


def err(code, message="error"):
    return httpx.Response(200, json={"data": [], "errors": {"code": code, "message": message}})


def test_request_contract_posts_merchant_and_limits():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["host"] = request.url.host
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return ok({"code": 100, "message": "Success", "payman_authority": "payman_abc"})

    client = make_client(handler)
    result = client.request_contract(
        mobile="09121234567",
        expire_at="2026-01-15 12:00:00",
        max_daily_count=10,
        max_monthly_count=100,
        max_amount=50_000_000,
        callback_url="https://billing.example.com/contracts/callback",
        ssn="0012345678",
    )
    assert result.success
    assert result.data["payman_authority"] == "payman_abc"
    assert seen["host"] == "sandbox.zarinpal.com"
    assert seen["path"] == "/pg/v4/payman/request.json"
    assert seen["body"]["merchant_id"] == MERCHANT
    assert seen["body"]["max_amount"] == "50000000"
    assert seen["body"]["ssn"] == "0012345678"


@pytest.mark.parametrize("code, category, exc", [
    (-74, "auth", GatewayAuthError),
    (-80, "auth", GatewayAuthError),
    (-12, "transient", GatewayTransientError),
    (-34, "permanent", GatewayBusinessError),
    (-51, "permanent", GatewayBusinessError),
])
def test_error_codes_are_categorized(code, category, exc):
    client = make_client(lambda request: err(code))
    result = client.verify_contract_and_get_signature("payman_abc")
    assert not result.success
    assert result.code == code
    assert result.category == category
    assert categorize(code) == category
    with pytest.raises(exc):
        result.raise_for_error()


def test_declined_data_code_is_an_error():
    client = make_client(lambda request: ok({"code": -51, "message": "Session is not valid"}))
    result = client.verify_payment("A" * 36, 100_000)
    assert not result.success
    assert result.code == -51
    assert result.message == "Session is not valid"


def test_already_verified_counts_as_success():
    client = make_client(lambda request: ok({"code": 101, "ref_id": 9876}))
    result = client.verify_payment("A" * 36, 100_000)
    assert result.success
    assert result.code == 101


def test_non_json_body_is_transient():
    client = make_client(lambda request: httpx.Response(502, text="<html>Bad gateway</html>"))
    with pytest.raises(GatewayTransientError):
        client.get_bank_list()


def test_network_timeout_is_transient():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    client = make_client(handler)
    with pytest.raises(GatewayTransientError):
        client.verify_payment("A" * 36, 100_000)


def test_bank_list_without_code():
    banks = [{"name": "Bank Melli", "slug": "bmi", "bank_code": "017"}]
    client = make_client(lambda request: ok({"banks": banks}))
    result = client.get_bank_list()
    assert result.success
    assert result.data["banks"] == banks


def test_charge_persists_authority_before_checkout():
    order = []

    def handler(request: httpx.Request) -> httpx.Response:
        order.append(request.url.path)
        if request.url.path == "/pg/v4/payment/request.json":
            return ok({"code": 100, "authority": "A0000000000000000000000000000000042"})
        assert json.loads(request.content)["signature"] == SIGNATURE
        return ok({"code": 100, "refrence_id": 555})

    client = make_client(handler)
    result = client.charge(
        signature=SIGNATURE,
        amount=100_000,
        description="Renewal",
        callback_url="https://billing.example.com/billing/callback",
        on_authority=lambda a: order.append(f"stored:{a}"),
    )
    assert result.success
    assert result.data["ref_id"] == "555"
    assert result.data["authority"] == "A0000000000000000000000000000000042"
    assert order == [
        "/pg/v4/payment/request.json",
        "stored:A0000000000000000000000000000000042",
        "/pg/v4/payman/checkout.json",
    ]


def test_failed_checkout_keeps_authority():
    def handler(request):
        if request.url.path == "/pg/v4/payment/request.json":
            return ok({"code": 100, "authority": "A123"})
        return err(-34, "limit exceeded")

    result = make_client(handler).charge(
        signature=SIGNATURE, amount=100_000, description="x", callback_url="https://x.example.com",
    )
    assert not result.success
    assert result.code == -34
    assert result.data["authority"] == "A123"


def test_charge_validates_before_network():
    calls = []
    client = make_client(lambda request: calls.append(request) or ok({"code": 100}))
    with pytest.raises(ValidationError):
        client.charge(signature="short", amount=100_000, description="x", callback_url="https://x")
    with pytest.raises(ValidationError):
        client.charge(signature=SIGNATURE, amount=999, description="x", callback_url="https://x")
    assert calls == []


def test_merchant_id_validation():
    with pytest.raises(GatewayAuthError):
        validate_merchant_id("")
    with pytest.raises(GatewayAuthError):
        validate_merchant_id("not-a-uuid")
    with pytest.raises(GatewayAuthError):
        validate_merchant_id(PLACEHOLDER_MERCHANT_ID, sandbox=False)
    validate_merchant_id(PLACEHOLDER_MERCHANT_ID, sandbox=True)


def test_refund_requires_access_token():
    client = make_client(lambda request: ok({"code": 100}))
    with pytest.raises(GatewayAuthError):
        client.refund(authority="A" * 36, amount=100_000)


def test_refund_sends_bearer_token():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers.get("Authorization")
        return ok({"code": 100, "refund_id": 1})

    client = make_client(handler, access_token="tok123")
    assert client.refund(authority="A" * 36, amount=100_000).success
    assert seen["auth"] == "Bearer tok123"


def test_signing_and_start_pay_urls():
    client = make_client(lambda request: ok({}))
    assert client.signing_url("payman_abc", "017") == "https://sandbox.zarinpal.com/pg/StartPayman/payman_abc/017"
    assert client.start_pay_url("A42") == "https://sandbox.zarinpal.com/pg/StartPay/A42"


def test_result_error_uses_known_message():
    res = GatewayResult.error(-74)
    assert res.message == "Invalid merchant id"
    assert res.is_auth_error
