"""
Tests for the direct-debit contract lifecycle (initiate -> verify -> cancel).
"""
import pytest

from billing.handlers import contract_handler
from billing.handlers.contract_handler import normalize_mobile
from billing.utils import billing_db
from billing.utils.errors import (
    GatewayAuthError, GatewayBusinessError, GatewayTransientError, GatewayUnavailable, InvalidMobileFormat,
    InvalidTransition, NotFoundError, ValidationError,
)
from billing.utils.metadata import CancelledInfo
from billing.utils.zarinpal import GatewayResult

CALLBACK = "https://app.example.com/contracts/callback"


async def initiate(contracts, user_id=1, **kwargs):
    return await contracts.initiate_contract(user_id=user_id, mobile="09121234567", callback_url=CALLBACK, **kwargs)


async def verify(contracts, init, *, user_id=1, status="OK"):
    return await contracts.verify_contract(user_id=user_id, authority=init.payman_authority, user_status=status,
                                           contract_id=init.contract_id)


# ──────────────────────────────────────────────────────────────────────────────
# initiate
# ──────────────────────────────────────────────────────────────────────────────
@pytest.mark.parametrize("raw", ["09121234567", "9121234567", "+989121234567", "0912-123-4567"])
def test_normalize_mobile(raw):
    assert normalize_mobile(raw) == "09121234567"


@pytest.mark.asyncio
@pytest.mark.parametrize("kwargs, exc", [
    ({"mobile": "12345"}, InvalidMobileFormat),
    ({"ssn": "123"}, ValidationError),
    ({"duration_days": 10}, ValidationError),
    ({"max_daily_count": 0}, ValidationError),
    ({"max_monthly_count": 20000}, ValidationError),
    ({"max_amount": 50_000}, ValidationError),
    ({"callback_url": ""}, ValidationError),
])
async def test_initiate_validates_before_gateway(contracts, gateway, kwargs, exc):
    """Bad input never reaches the gateway."""
    params = {"user_id": 1, "mobile": "09121234567", "callback_url": CALLBACK}
    params.update(kwargs)
    with pytest.raises(exc):
        await contracts.initiate_contract(**params)
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_initiate_persists_pending_contract(contracts, gateway, repo):
    init = await contracts.initiate_contract(user_id=1, mobile="+989121234567", callback_url=CALLBACK,
                                             ssn="0012345678")

    assert init.payman_authority == "payman_auth_0001"
    assert [b.bank_code for b in init.banks] == ["017"]
    assert init.signing_url_template == "https://sandbox.zarinpal.com/pg/StartPayman/payman_auth_0001/{BANK_CODE}"

    _, sent = gateway.calls[0]
    assert sent["mobile"] == "09121234567"
    assert sent["expire_at"] == "2026-01-15 12:00:00"
    assert sent["ssn"] == "0012345678"

    rec = repo.contract_get(init.contract_id)
    assert rec.contract_status == billing_db.CONTRACT_PENDING
    assert rec.payman_authority == "payman_auth_0001"
    assert rec.contract_signature is None
    assert rec.is_active is False


@pytest.mark.asyncio
async def test_initiate_without_authority_is_unavailable(contracts, gateway, repo):
    gateway.contract_result = GatewayResult.ok(100, {})
    with pytest.raises(GatewayUnavailable):
        await initiate(contracts)
    assert repo.contract_list_for_user(1) == []


@pytest.mark.asyncio
async def test_initiate_transient_error_is_unavailable(contracts, gateway):
    gateway.contract_result = GatewayResult.error(-12)
    with pytest.raises(GatewayUnavailable):
        await initiate(contracts)


@pytest.mark.asyncio
async def test_initiate_empty_bank_list_is_unavailable(contracts, gateway, repo):
    gateway.banks_result = GatewayResult.ok(100, {"banks": []})
    with pytest.raises(GatewayUnavailable):
        await initiate(contracts)
    assert repo.contract_list_for_user(1) == []


@pytest.mark.asyncio
async def test_initiate_bad_merchant_is_auth_error(contracts, gateway):
    gateway.contract_result = GatewayResult.error(-74)
    with pytest.raises(GatewayAuthError):
        await initiate(contracts)
    assert gateway.count("get_bank_list") == 0


# ──────────────────────────────────────────────────────────────────────────────
# verify
# ──────────────────────────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_verify_ok_activates_primary(contracts, gateway, repo, dispatcher):
    init = await initiate(contracts)
    res = await verify(contracts, init)

    assert res.outcome == contract_handler.ACTIVE
    assert res.success
    assert res.is_primary
    rec = repo.contract_get(init.contract_id)
    assert rec.contract_status == billing_db.CONTRACT_ACTIVE
    assert rec.contract_type == billing_db.TYPE_DIRECT_DEBIT
    assert rec.contract_signature == gateway.signature_result.data["signature"]
    assert rec.payman_authority is None
    assert rec.contract_verified_at is not None

    assert dispatcher.types == ["contract.activated"]
    _, data = dispatcher.events[0]
    assert "signature" not in str(data).lower()


@pytest.mark.asyncio
async def test_verify_replay_is_idempotent(contracts, gateway):
    """A second callback for an active contract does not hit the gateway again."""
    init = await initiate(contracts)
    await verify(contracts, init)
    again = await verify(contracts, init)

    assert again.outcome == contract_handler.ALREADY_ACTIVE
    assert again.payment_method_id == init.contract_id
    assert gateway.count("verify_contract") == 1


@pytest.mark.asyncio
async def test_verify_nok_cancels_without_gateway(contracts, gateway, repo):
    init = await initiate(contracts)
    res = await verify(contracts, init, status="nok")

    assert res.outcome == contract_handler.CANCELLED_BY_USER
    assert not res.success
    assert gateway.count("verify_contract") == 0
    rec = repo.contract_get(init.contract_id)
    assert rec.contract_status == billing_db.CONTRACT_CANCELLED
    assert rec.payman_authority is None


@pytest.mark.asyncio
async def test_verify_rejected_by_gateway(contracts, gateway, repo, dispatcher):
    gateway.signature_result = GatewayResult.error(-51)
    init = await initiate(contracts)
    res = await verify(contracts, init)

    assert res.outcome == contract_handler.VERIFICATION_FAILED
    assert res.code == -51
    assert repo.contract_get(init.contract_id).contract_status == billing_db.CONTRACT_VERIFICATION_FAILED
    assert dispatcher.events == []

    # closed record: no further gateway calls
    again = await verify(contracts, init)
    assert again.outcome == billing_db.CONTRACT_VERIFICATION_FAILED
    assert gateway.count("verify_contract") == 1


@pytest.mark.asyncio
async def test_verify_without_signature_fails(contracts, gateway, repo):
    gateway.signature_result = GatewayResult.ok(100, {})
    init = await initiate(contracts)
    res = await verify(contracts, init)
    assert res.outcome == contract_handler.VERIFICATION_FAILED
    assert repo.contract_get(init.contract_id).contract_signature is None


@pytest.mark.asyncio
@pytest.mark.parametrize("code, exc", [(-74, GatewayAuthError), (-12, GatewayTransientError)])
async def test_verify_infrastructure_error_keeps_pending(contracts, gateway, repo, code, exc):
    gateway.signature_result = GatewayResult.error(code)
    init = await initiate(contracts)
    with pytest.raises(exc):
        await verify(contracts, init)
    rec = repo.contract_get(init.contract_id)
    assert rec.contract_status == billing_db.CONTRACT_PENDING
    assert rec.payman_authority == init.payman_authority


@pytest.mark.asyncio
async def test_verify_same_signature_twice_keeps_one_contract(contracts, gateway, repo):
    first = await initiate(contracts)
    await verify(contracts, first)

    gateway.contract_result = GatewayResult.ok(100, {"payman_authority": "payman_auth_0002"})
    second = await initiate(contracts)
    res = await verify(contracts, second)

    assert res.outcome == contract_handler.ALREADY_ACTIVE
    assert res.payment_method_id == first.contract_id
    assert repo.contract_get(second.contract_id) is None
    assert len(repo.contract_list_for_user(1, active_only=True)) == 1

    # replay of the folded record still resolves to the surviving contract
    replay = await verify(contracts, second)
    assert replay.outcome == contract_handler.ALREADY_ACTIVE
    assert replay.payment_method_id == first.contract_id


@pytest.mark.asyncio
async def test_second_contract_is_not_primary(contracts, gateway):
    first = await initiate(contracts)
    await verify(contracts, first)

    gateway.contract_result = GatewayResult.ok(100, {"payman_authority": "payman_auth_0002"})
    gateway.signature_result = GatewayResult.ok(100, {"signature": "SIG_" + "b" * 60})
    second = await initiate(contracts)
    res = await verify(contracts, second)

    assert res.outcome == contract_handler.ACTIVE
    assert res.is_primary is False
    assert contracts.get_primary_contract(1).id == first.contract_id


@pytest.mark.asyncio
async def test_verify_authority_mismatch(contracts):
    init = await initiate(contracts)
    with pytest.raises(ValidationError):
        await contracts.verify_contract(user_id=1, authority="payman_other", user_status="OK",
                                        contract_id=init.contract_id)


@pytest.mark.asyncio
async def test_verify_bad_status(contracts):
    init = await initiate(contracts)
    with pytest.raises(ValidationError):
        await verify(contracts, init, status="MAYBE")


@pytest.mark.asyncio
async def test_verify_foreign_contract_not_found(contracts):
    init = await initiate(contracts)
    with pytest.raises(NotFoundError):
        await verify(contracts, init, user_id=2)


# ──────────────────────────────────────────────────────────────────────────────
# cancel
# ──────────────────────────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_cancel_cascades_to_subscriptions(contracts, gateway, repo, dispatcher, make_contract,
                                                make_active_subscription):
    primary = make_contract(1)
    backup = make_contract(1)
    sub = make_active_subscription(1, contract=primary)

    res = await contracts.cancel_contract(user_id=1, contract_id=primary.id)

    assert res.canceled_subscription_ids == [sub.id]
    assert res.new_primary_id == backup.id
    assert gateway.count("cancel_contract") == 1

    rec = repo.contract_get(primary.id)
    assert rec.contract_status == billing_db.CONTRACT_CANCELLED
    assert rec.contract_signature is None
    assert rec.is_primary is False

    closed = repo.subscription_get(sub.id)
    assert closed.status == billing_db.SUB_CANCELED
    assert closed.next_billing_date is None
    assert isinstance(closed.meta.state, CancelledInfo)
    assert closed.meta.state.reason == "contract_cancelled"

    assert dispatcher.types == ["contract.cancelled", "subscription.canceled"]


@pytest.mark.asyncio
async def test_cancel_twice_is_invalid(contracts, make_contract):
    c = make_contract(1)
    await contracts.cancel_contract(user_id=1, contract_id=c.id)
    with pytest.raises(InvalidTransition):
        await contracts.cancel_contract(user_id=1, contract_id=c.id)


@pytest.mark.asyncio
async def test_cancel_refused_by_gateway_keeps_contract(contracts, gateway, repo, make_contract):
    c = make_contract(1)
    gateway.cancel_result = GatewayResult.error(-34)
    with pytest.raises(GatewayBusinessError):
        await contracts.cancel_contract(user_id=1, contract_id=c.id)
    assert repo.contract_get(c.id).contract_status == billing_db.CONTRACT_ACTIVE


@pytest.mark.asyncio
async def test_cancel_foreign_contract(contracts, make_contract):
    c = make_contract(1)
    with pytest.raises(NotFoundError):
        await contracts.cancel_contract(user_id=2, contract_id=c.id)


@pytest.mark.asyncio
async def test_list_contracts(contracts, make_contract):
    first = make_contract(1)
    second = make_contract(1)
    make_contract(2)
    await contracts.cancel_contract(user_id=1, contract_id=first.id)

    assert {c.id for c in contracts.list_contracts(1)} == {first.id, second.id}
    assert [c.id for c in contracts.list_contracts(1, active_only=True)] == [second.id]
    assert contracts.list_contracts(3) == []


def test_usable_contract(subscriptions, repo, clock, make_contract):
    c = make_contract(1)
    assert subscriptions.usable_contract(1, c.id).id == c.id
    assert subscriptions.usable_contract(1, None).id == c.id
    assert subscriptions.usable_contract(2, c.id) is None
    clock.advance(days=366)
    assert subscriptions.usable_contract(1, c.id) is None
