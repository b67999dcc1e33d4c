"""
Pytest configuration and fixtures for billing engine tests.
"""
import os

# must be set before billing.config is imported
os.environ.setdefault("DB_URL", "sqlite://")
os.environ.setdefault("APP_ENV", "test")

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from billing.handlers.contract_handler import ContractService
from billing.handlers.payment_handler import WebhookProcessor
from billing.handlers.subscription_handler import SubscriptionService
from billing.handlers.webhook_dispatcher import DeliveryResult, DispatchReport
from billing.utils import billing_db
from billing.utils.catalog import MONTHLY, ONE_TIME, ProductCatalog
from billing.utils.metadata import ActiveInfo, SubscriptionMetadata
from billing.utils.time_helpers import UTC
from billing.utils.zarinpal import SANDBOX_SIGNING_URL_TEMPLATE, GatewayResult

SIGNATURE = "SIG_" + "a1b2c3d4" * 8


class FixedClock:
    """Deterministic clock; advance() moves it forward."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeGateway:
    """
    In-process stand-in for ZarinPalClient. Results are configured per test;
    charge_results is a queue (GatewayResult or exception), default success.
    """
    signing_url_template = SANDBOX_SIGNING_URL_TEMPLATE

    def __init__(self):
        self.contract_result = GatewayResult.ok(100, {"payman_authority": "payman_auth_0001"})
        self.banks_result = GatewayResult.ok(100, {"banks": [
            {"name": "Bank Melli", "slug": "bmi", "bank_code": "017",
             "max_daily_amount": 500_000_000, "max_daily_count": 10},
        ]})
        self.signature_result = GatewayResult.ok(100, {"signature": SIGNATURE})
        self.cancel_result = GatewayResult.ok(100, {})
        self.charge_results: List[Any] = []
        self.payment_result = None
        self.verify_result: Any = GatewayResult.ok(100, {"ref_id": "201"})
        self.calls: List[tuple] = []
        self._seq = 0

    def count(self, name: str) -> int:
        return sum(1 for c in self.calls if c[0] == name)

    def _authority(self) -> str:
        self._seq += 1
        return f"A{self._seq:035d}"

    def request_contract(self, **kwargs) -> GatewayResult:
        self.calls.append(("request_contract", kwargs))
        return self.contract_result

    def get_bank_list(self) -> GatewayResult:
        self.calls.append(("get_bank_list", {}))
        return self.banks_result

    def verify_contract_and_get_signature(self, payman_authority: str) -> GatewayResult:
        self.calls.append(("verify_contract", {"payman_authority": payman_authority}))
        return self.signature_result

    def cancel_contract(self, signature: str) -> GatewayResult:
        self.calls.append(("cancel_contract", {"signature": signature}))
        return self.cancel_result

    def charge(self, *, signature: str, amount: int, description: str, callback_url: str,
               metadata: Optional[Dict[str, Any]] = None, on_authority=None) -> GatewayResult:
        self.calls.append(("charge", {"signature": signature, "amount": amount, "metadata": metadata}))
        outcome = self.charge_results.pop(0) if self.charge_results else None
        if isinstance(outcome, Exception):
            raise outcome
        authority = self._authority()
        if on_authority is not None:
            on_authority(authority)
        if outcome is None:
            outcome = GatewayResult.ok(100, {"ref_id": f"REF{self._seq}"})
        data = dict(outcome.data)
        data["authority"] = authority
        return GatewayResult(outcome.success, outcome.code, outcome.message, data, outcome.category)

    def request_payment(self, *, amount: int, description: str, callback_url: str,
                        metadata: Optional[Dict[str, Any]] = None) -> GatewayResult:
        self.calls.append(("request_payment", {"amount": amount, "metadata": metadata}))
        if self.payment_result is not None:
            return self.payment_result
        return GatewayResult.ok(100, {"authority": self._authority()})

    def start_pay_url(self, authority: str) -> str:
        return f"https://sandbox.zarinpal.com/pg/StartPay/{authority}"

    def verify_payment(self, authority: str, amount: int) -> GatewayResult:
        self.calls.append(("verify_payment", {"authority": authority, "amount": amount}))
        if isinstance(self.verify_result, Exception):
            raise self.verify_result
        return self.verify_result


class FakeDispatcher:
    """Records emitted events instead of delivering them."""

    def __init__(self, delivered: bool = True):
        self.events: List[tuple] = []
        self.delivered = delivered

    @property
    def types(self) -> List[str]:
        return [t for t, _ in self.events]

    async def emit(self, event_type: str, data: Dict[str, Any]) -> DispatchReport:
        self.events.append((event_type, data))
        return DispatchReport(
            event_id=f"evt_{len(self.events)}",
            event_type=event_type,
            deliveries=[DeliveryResult("we_1", "https://hooks.example.com", self.delivered, 1, 200)],
        )


TEST_PRODUCTS = {
    "starter": {"name": "Starter", "price": 100_000, "billing_period": MONTHLY},
    "growth": {"name": "Growth", "price": 150_000, "billing_period": MONTHLY},
    "scale": {"name": "Scale", "price": 300_000, "billing_period": MONTHLY},
    "lifetime": {"name": "Lifetime", "price": 2_000_000, "billing_period": ONE_TIME},
    "legacy": {"name": "Legacy", "price": 50_000, "billing_period": MONTHLY, "is_active": False},
}


@pytest.fixture
def in_memory_db():
    """Fresh SQLite database per test. Returns (repo, SessionLocal)."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    billing_db.init_schema(bind=engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    yield billing_db.BillingRepository(SessionLocal), SessionLocal
    engine.dispose()


@pytest.fixture
def repo(in_memory_db):
    return in_memory_db[0]


@pytest.fixture
def clock():
    return FixedClock(datetime(2025, 1, 15, 12, 0, 0, tzinfo=UTC))


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def catalog():
    return ProductCatalog.from_mapping(TEST_PRODUCTS)


@pytest.fixture
def contracts(repo, gateway, dispatcher, clock):
    return ContractService(repo, gateway, dispatcher=dispatcher, clock=clock)


@pytest.fixture
def subscriptions(repo, gateway, catalog, dispatcher, clock):
    return SubscriptionService(repo, gateway, catalog, dispatcher=dispatcher, clock=clock, max_retries=3,
                               period_days=30, callback_url="https://billing.example.com/billing/callback")


@pytest.fixture
def processor(repo, gateway, subscriptions, dispatcher, clock):
    return WebhookProcessor(repo, gateway, subscriptions, dispatcher=dispatcher, clock=clock)


@pytest.fixture
def make_contract(repo, clock):
    """Creates an active, signed contract directly in the DB."""
    counter = {"n": 0}

    def _make(user_id: int = 1, signature: Optional[str] = None) -> billing_db.PaymentMethod:
        counter["n"] += 1
        rec = repo.contract_create_pending(
            user_id=user_id,
            payman_authority=f"payman_seed_{counter['n']}",
            mobile="09121234567",
            duration_days=365,
            max_daily_amount=50_000_000,
            max_daily_count=10,
            max_monthly_count=100,
            expires_at=clock() + timedelta(days=365),
            now=clock(),
        )
        return repo.contract_promote(rec.id, signature=signature or f"{SIGNATURE}_{counter['n']}", now=clock())

    return _make


@pytest.fixture
def make_active_subscription(repo, clock, catalog, make_contract):
    """Active monthly subscription due at next_billing_date (defaults to now)."""

    def _make(user_id: int = 1, product_id: str = "starter", *, contract=None,
              next_billing_date: Optional[datetime] = None,
              metadata: Optional[SubscriptionMetadata] = None) -> billing_db.Subscription:
        contract = contract or make_contract(user_id)
        product = catalog.get(product_id)
        sub = repo.subscription_create(
            user_id=user_id,
            product_id=product.id,
            billing_period=product.billing_period,
            price=product.price,
            contract_id=contract.id,
            metadata=SubscriptionMetadata(),
            now=clock() - timedelta(days=30),
        )
        meta = metadata or SubscriptionMetadata(state=ActiveInfo(activated_at=clock() - timedelta(days=30)))
        return repo.subscription_activate(
            sub.id,
            now=clock() - timedelta(days=30),
            next_billing_date=next_billing_date or clock(),
            metadata=meta,
        )

    return _make
