# payman_billing/billing/utils/billing_db.py
# MySQL 8+ in production, SQLite for tests.
from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import (
    create_engine, inspect,
    String, Integer, BigInteger, Boolean, ForeignKey, DateTime, Text,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import (
    DeclarativeBase, Mapped, mapped_column, sessionmaker, Session
)

from billing.config import DB_URL
from billing.utils.errors import ConcurrencyConflict, InvalidTransition, SubscriptionConflict
from billing.utils.metadata import (
    CancelledInfo, ExpiredInfo, SubscriptionMetadata,
)
from billing.utils.time_helpers import now_utc, to_utc_for_db

logger = logging.getLogger(__name__)

# statuses
SUB_PENDING, SUB_ACTIVE, SUB_CANCELED, SUB_EXPIRED = "pending", "active", "canceled", "expired"
PAY_PENDING, PAY_COMPLETED, PAY_FAILED = "pending", "completed", "failed"
CONTRACT_PENDING = "pending_signature"
CONTRACT_ACTIVE = "active"
CONTRACT_CANCELLED = "cancelled_by_user"
CONTRACT_VERIFICATION_FAILED = "verification_failed"
TYPE_PENDING_CONTRACT = "pending_contract"
TYPE_DIRECT_DEBIT = "direct_debit_contract"


def _uuid() -> str:
    return str(uuid.uuid4())


def _db_now() -> datetime:
    return to_utc_for_db(now_utc())


# =========================
#     ORM Base & Engine
# =========================
class Base(DeclarativeBase):
    pass


def _make_engine(url: str = DB_URL):
    eng = create_engine(
        url,
        future=True,
        echo=False,
        pool_pre_ping=True,
    )
    return eng


engine = _make_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


# =========================
#          Models
# =========================
# All DateTime columns hold naive UTC.
class PaymentMethod(Base):
    """
    Direct-debit contracts (Payman). The signature is as sensitive as a card token.
    """
    __tablename__ = "payment_methods"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[int] = mapped_column(BigInteger, index=True, nullable=False)

    contract_type: Mapped[str] = mapped_column(String(32), nullable=False, default=TYPE_PENDING_CONTRACT)
    contract_status: Mapped[str] = mapped_column(String(32), nullable=False, default=CONTRACT_PENDING)
    # only while pending_signature
    payman_authority: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    # only while active
    contract_signature: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    contract_display_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    contract_mobile: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    contract_duration_days: Mapped[int] = mapped_column(Integer, nullable=False, default=365)
    max_daily_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    max_daily_count: Mapped[int] = mapped_column(Integer, nullable=False)
    max_monthly_count: Mapped[int] = mapped_column(Integer, nullable=False)
    bank_code: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)

    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    contract_verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_db_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_db_now, nullable=False)

    def __repr__(self) -> str:
        sig = "set" if self.contract_signature else "none"
        return (f"PaymentMethod(id={self.id!r}, user_id={self.user_id}, "
                f"status={self.contract_status!r}, primary={self.is_primary}, signature={sig})")


class Subscription(Base):
    """
    Recurring entitlement to a product.
    """
    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[int] = mapped_column(BigInteger, index=True, nullable=False)
    product_id: Mapped[str] = mapped_column(String(64), nullable=False)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default=SUB_PENDING)  # pending|active|canceled|expired
    billing_period: Mapped[str] = mapped_column(String(16), nullable=False, default="monthly")  # monthly|one_time
    current_price: Mapped[int] = mapped_column(BigInteger, nullable=False)

    start_date: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_db_now)
    end_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    next_billing_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    direct_debit_contract_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("payment_methods.id"), nullable=True, index=True
    )
    metadata_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # "{user_id}:{product_id}" while active, NULL otherwise -> one active per (user, product)
    active_guard: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, unique=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_db_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_db_now, nullable=False)

    @property
    def meta(self) -> SubscriptionMetadata:
        return SubscriptionMetadata.from_json(self.metadata_json)


class Payment(Base):
    """
    One charge (initial, recurring or plan-change proration).
    """
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[int] = mapped_column(BigInteger, index=True, nullable=False)
    subscription_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=True, index=True
    )
    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False, default="initial")  # initial|recurring|plan_change

    status: Mapped[str] = mapped_column(String(16), nullable=False, default=PAY_PENDING)  # pending|completed|failed
    gateway_authority: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    ref_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # subscription_id while pending, NULL otherwise -> one pending payment per subscription
    pending_guard: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, unique=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_db_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_db_now, nullable=False)


class WebhookEvent(Base):
    """
    Audit log of inbound gateway notifications.
    """
    __tablename__ = "webhook_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="zarinpal", index=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    raw_payload: Mapped[str] = mapped_column(Text, nullable=False)

    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    payment_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    processing_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    forwarded_to_external: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    forwarded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    forwarding_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_db_now, nullable=False)

    @property
    def payload(self) -> Dict[str, Any]:
        return json.loads(self.raw_payload or "{}")


class WebhookEndpoint(Base):
    """
    Outbound webhook destinations.
    """
    __tablename__ = "webhook_endpoints"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    url: Mapped[str] = mapped_column(String(512), nullable=False, unique=True)
    secret: Mapped[str] = mapped_column(String(256), nullable=False)
    event_types_json: Mapped[str] = mapped_column(Text, nullable=False, default='["*"]')
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    description: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_db_now, nullable=False)

    @property
    def event_types(self) -> List[str]:
        return list(json.loads(self.event_types_json or '["*"]'))


# =========================
#       Schema
# =========================
def init_schema(bind=None) -> None:
    bind = bind or engine
    Base.metadata.create_all(bind=bind)
    # Additive migration: check via Inspector and add missing columns/indexes.
    with bind.begin() as conn:
        insp = inspect(conn)

        # ---- payments: columns ----
        pay_cols = {c["name"] for c in insp.get_columns("payments")}
        if "kind" not in pay_cols:
            conn.exec_driver_sql("ALTER TABLE payments ADD COLUMN kind VARCHAR(16) NOT NULL DEFAULT 'initial'")

        # ---- indexes ----
        sub_indexes = {ix["name"] for ix in insp.get_indexes("subscriptions")}
        if "idx_sub_status_next" not in sub_indexes:
            conn.exec_driver_sql("CREATE INDEX idx_sub_status_next ON subscriptions (status, next_billing_date)")
        if "idx_sub_user_status" not in sub_indexes:
            conn.exec_driver_sql("CREATE INDEX idx_sub_user_status ON subscriptions (user_id, status)")

        pay_indexes = {ix["name"] for ix in insp.get_indexes("payments")}
        if "idx_pay_sub_status" not in pay_indexes:
            conn.exec_driver_sql("CREATE INDEX idx_pay_sub_status ON payments (subscription_id, status, created_at)")


# =========================
#       Repository
# =========================
class BillingRepository:
    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def _session(self) -> Session:
        return self._session_factory()

    # ──────────────────────────────────────────────────────────────────────
    # Contracts
    # ──────────────────────────────────────────────────────────────────────
    def contract_create_pending(
        self,
        *,
        user_id: int,
        payman_authority: str,
        mobile: str,
        duration_days: int,
        max_daily_amount: int,
        max_daily_count: int,
        max_monthly_count: int,
        expires_at: Optional[datetime],
        now: datetime,
    ) -> PaymentMethod:
        with self._session() as s, s.begin():
            rec = PaymentMethod(
                user_id=user_id,
                contract_type=TYPE_PENDING_CONTRACT,
                contract_status=CONTRACT_PENDING,
                payman_authority=payman_authority,
                contract_display_name="Direct Debit Contract (Pending)",
                contract_mobile=mobile,
                contract_duration_days=duration_days,
                max_daily_amount=max_daily_amount,
                max_daily_count=max_daily_count,
                max_monthly_count=max_monthly_count,
                is_primary=False,
                is_active=False,
                expires_at=to_utc_for_db(expires_at),
                created_at=to_utc_for_db(now),
                updated_at=to_utc_for_db(now),
            )
            s.add(rec)
            s.flush()
            return rec

    def contract_get(self, contract_id: str) -> Optional[PaymentMethod]:
        with self._session() as s:
            return s.get(PaymentMethod, contract_id)

    def contract_list_for_user(self, user_id: int, *, active_only: bool = False) -> List[PaymentMethod]:
        with self._session() as s:
            q = s.query(PaymentMethod).filter(PaymentMethod.user_id == user_id)
            if active_only:
                q = q.filter(PaymentMethod.contract_status == CONTRACT_ACTIVE, PaymentMethod.is_active.is_(True))
            return list(q.order_by(PaymentMethod.created_at.desc()).all())

    def contract_get_primary(self, user_id: int) -> Optional[PaymentMethod]:
        with self._session() as s:
            return (
                s.query(PaymentMethod)
                .filter(
                    PaymentMethod.user_id == user_id,
                    PaymentMethod.contract_status == CONTRACT_ACTIVE,
                    PaymentMethod.is_active.is_(True),
                    PaymentMethod.is_primary.is_(True),
                )
                .first()
            )

    def contract_find_active_by_signature(self, user_id: int, signature: str) -> Optional[PaymentMethod]:
        with self._session() as s:
            return (
                s.query(PaymentMethod)
                .filter(
                    PaymentMethod.user_id == user_id,
                    PaymentMethod.contract_status == CONTRACT_ACTIVE,
                    PaymentMethod.contract_signature == signature,
                )
                .first()
            )

    def contract_mark_terminal(self, contract_id: str, *, status: str, now: datetime) -> Optional[PaymentMethod]:
        """
        pending_signature -> cancelled_by_user | verification_failed.
        The authority is dropped: it is only meaningful while pending.
        """
        if status not in (CONTRACT_CANCELLED, CONTRACT_VERIFICATION_FAILED):
            raise ValueError(f"not a terminal contract status: {status}")
        with self._session() as s, s.begin():
            rec = s.query(PaymentMethod).with_for_update().filter(PaymentMethod.id == contract_id).one_or_none()
            if rec is None or rec.contract_status != CONTRACT_PENDING:
                return rec
            rec.contract_status = status
            rec.payman_authority = None
            rec.is_active = False
            rec.updated_at = to_utc_for_db(now)
            return rec

    def contract_promote(self, contract_id: str, *, signature: str, now: datetime) -> Optional[PaymentMethod]:
        """
        pending_signature -> active in one transaction. Becomes primary when the
        user has no other active contract.
        """
        with self._session() as s, s.begin():
            rec = s.query(PaymentMethod).with_for_update().filter(PaymentMethod.id == contract_id).one_or_none()
            if rec is None or rec.contract_status != CONTRACT_PENDING:
                return rec
            others = (
                s.query(PaymentMethod.id)
                .filter(
                    PaymentMethod.user_id == rec.user_id,
                    PaymentMethod.id != rec.id,
                    PaymentMethod.contract_status == CONTRACT_ACTIVE,
                    PaymentMethod.is_active.is_(True),
                )
                .count()
            )
            rec.contract_type = TYPE_DIRECT_DEBIT
            rec.contract_status = CONTRACT_ACTIVE
            rec.contract_signature = signature
            rec.payman_authority = None
            rec.contract_display_name = "Direct Debit Contract"
            rec.is_active = True
            rec.is_primary = others == 0
            rec.contract_verified_at = to_utc_for_db(now)
            rec.updated_at = to_utc_for_db(now)
            return rec

    def contract_delete(self, contract_id: str) -> bool:
        with self._session() as s, s.begin():
            rec = s.get(PaymentMethod, contract_id)
            if rec is None:
                return False
            s.delete(rec)
            return True

    def contract_cancel(self, contract_id: str, *, now: datetime) -> Tuple[Optional[PaymentMethod], List[str]]:
        """
        active -> cancelled_by_user. Clears the signature, hands the primary flag to
        the newest remaining active contract and cancels active subscriptions that
        bill through this contract. Returns (contract, canceled_subscription_ids).
        """
        now_db = to_utc_for_db(now)
        with self._session() as s, s.begin():
            rec = s.query(PaymentMethod).with_for_update().filter(PaymentMethod.id == contract_id).one_or_none()
            if rec is None or rec.contract_status != CONTRACT_ACTIVE:
                return rec, []
            was_primary = rec.is_primary
            rec.contract_status = CONTRACT_CANCELLED
            rec.contract_signature = None
            rec.is_active = False
            rec.is_primary = False
            rec.updated_at = now_db

            if was_primary:
                successor = (
                    s.query(PaymentMethod)
                    .with_for_update()
                    .filter(
                        PaymentMethod.user_id == rec.user_id,
                        PaymentMethod.id != rec.id,
                        PaymentMethod.contract_status == CONTRACT_ACTIVE,
                        PaymentMethod.is_active.is_(True),
                    )
                    .order_by(PaymentMethod.created_at.desc())
                    .first()
                )
                if successor is not None:
                    successor.is_primary = True
                    successor.updated_at = now_db

            canceled: List[str] = []
            subs = (
                s.query(Subscription)
                .with_for_update()
                .filter(
                    Subscription.direct_debit_contract_id == contract_id,
                    Subscription.status == SUB_ACTIVE,
                )
                .all()
            )
            for sub in subs:
                meta = sub.meta
                meta.state = CancelledInfo(cancelled_at=now, reason="contract_cancelled")
                sub.status = SUB_CANCELED
                sub.end_date = now_db
                sub.next_billing_date = None
                sub.active_guard = None
                sub.metadata_json = meta.to_json()
                sub.updated_at = now_db
                canceled.append(sub.id)
            return rec, canceled

    def contract_touch_last_used(self, contract_id: str, *, now: datetime) -> None:
        with self._session() as s, s.begin():
            rec = s.get(PaymentMethod, contract_id)
            if rec is not None:
                rec.last_used_at = to_utc_for_db(now)

    # ──────────────────────────────────────────────────────────────────────
    # Subscriptions
    # ──────────────────────────────────────────────────────────────────────
    def subscription_create(
        self,
        *,
        user_id: int,
        product_id: str,
        billing_period: str,
        price: int,
        contract_id: Optional[str],
        metadata: SubscriptionMetadata,
        now: datetime,
    ) -> Subscription:
        now_db = to_utc_for_db(now)
        with self._session() as s, s.begin():
            rec = Subscription(
                user_id=user_id,
                product_id=product_id,
                status=SUB_PENDING,
                billing_period=billing_period,
                current_price=price,
                start_date=now_db,
                direct_debit_contract_id=contract_id,
                metadata_json=metadata.to_json(),
                created_at=now_db,
                updated_at=now_db,
            )
            s.add(rec)
            s.flush()
            return rec

    def subscription_get(self, subscription_id: str) -> Optional[Subscription]:
        with self._session() as s:
            return s.get(Subscription, subscription_id)

    def subscription_list_for_user(self, user_id: int) -> List[Subscription]:
        with self._session() as s:
            return list(
                s.query(Subscription)
                .filter(Subscription.user_id == user_id)
                .order_by(Subscription.created_at.desc())
                .all()
            )

    def subscription_find(self, *, user_id: int, product_id: str, status: str) -> Optional[Subscription]:
        with self._session() as s:
            return (
                s.query(Subscription)
                .filter(
                    Subscription.user_id == user_id,
                    Subscription.product_id == product_id,
                    Subscription.status == status,
                )
                .order_by(Subscription.created_at.desc())
                .first()
            )

    def subscription_activate(
        self,
        subscription_id: str,
        *,
        now: datetime,
        next_billing_date: Optional[datetime],
        metadata: SubscriptionMetadata,
    ) -> Optional[Subscription]:
        """
        pending -> active. Returns the row (unchanged if it was not pending).
        Raises SubscriptionConflict if another active row holds the same (user, product).
        """
        now_db = to_utc_for_db(now)
        try:
            with self._session() as s, s.begin():
                rec = s.query(Subscription).with_for_update().filter(Subscription.id == subscription_id).one_or_none()
                if rec is None or rec.status != SUB_PENDING:
                    return rec
                rec.status = SUB_ACTIVE
                rec.start_date = now_db
                rec.next_billing_date = to_utc_for_db(next_billing_date)
                rec.active_guard = f"{rec.user_id}:{rec.product_id}"
                rec.metadata_json = metadata.to_json()
                rec.updated_at = now_db
                s.flush()
                return rec
        except IntegrityError as e:
            raise SubscriptionConflict(
                f"user already has an active subscription for this product (subscription {subscription_id})"
            ) from e

    def subscription_close(
        self,
        subscription_id: str,
        *,
        status: str,
        now: datetime,
        reason: Optional[str] = None,
        from_statuses: Tuple[str, ...] = (SUB_ACTIVE,),
    ) -> Optional[Subscription]:
        """
        active -> canceled | expired: sets end_date, clears next_billing_date.
        Returns the row (unchanged if its status was not in from_statuses).
        """
        if status not in (SUB_CANCELED, SUB_EXPIRED):
            raise ValueError(f"not a closing status: {status}")
        now_db = to_utc_for_db(now)
        with self._session() as s, s.begin():
            rec = s.query(Subscription).with_for_update().filter(Subscription.id == subscription_id).one_or_none()
            if rec is None or rec.status not in from_statuses:
                return rec
            meta = rec.meta
            if status == SUB_CANCELED:
                meta.state = CancelledInfo(cancelled_at=now, reason=reason)
            else:
                meta.state = ExpiredInfo(expired_at=now, reason=reason or "retry_exhausted")
            rec.status = status
            rec.end_date = now_db
            rec.next_billing_date = None
            rec.active_guard = None
            rec.metadata_json = meta.to_json()
            rec.updated_at = now_db
            return rec

    def subscription_save_metadata(self, subscription_id: str, metadata: SubscriptionMetadata, *, now: datetime) -> None:
        with self._session() as s, s.begin():
            rec = s.query(Subscription).with_for_update().filter(Subscription.id == subscription_id).one_or_none()
            if rec is None:
                return
            rec.metadata_json = metadata.to_json()
            rec.updated_at = to_utc_for_db(now)

    def subscription_apply_plan(
        self,
        subscription_id: str,
        *,
        product_id: str,
        price: int,
        billing_period: str,
        metadata: SubscriptionMetadata,
        now: datetime,
    ) -> Optional[Subscription]:
        """
        Mutates the product fields of an active subscription (history lives in metadata).
        """
        now_db = to_utc_for_db(now)
        try:
            with self._session() as s, s.begin():
                rec = s.query(Subscription).with_for_update().filter(Subscription.id == subscription_id).one_or_none()
                if rec is None or rec.status != SUB_ACTIVE:
                    return rec
                rec.product_id = product_id
                rec.current_price = price
                rec.billing_period = billing_period
                rec.active_guard = f"{rec.user_id}:{product_id}"
                if billing_period != "monthly":
                    rec.next_billing_date = None
                rec.metadata_json = metadata.to_json()
                rec.updated_at = now_db
                s.flush()
                return rec
        except IntegrityError as e:
            raise SubscriptionConflict(
                f"user already has an active subscription for product {product_id!r}"
            ) from e

    def subscription_set_next_billing(self, subscription_id: str, *, next_billing_date: Optional[datetime],
                                      now: datetime) -> None:
        with self._session() as s, s.begin():
            rec = s.query(Subscription).with_for_update().filter(Subscription.id == subscription_id).one_or_none()
            if rec is None or rec.status != SUB_ACTIVE:
                return
            rec.next_billing_date = to_utc_for_db(next_billing_date)
            rec.updated_at = to_utc_for_db(now)

    def subscription_set_contract(self, subscription_id: str, *, contract_id: str,
                                  now: datetime) -> Optional[Subscription]:
        """Rebinds a pending subscription to another contract before it is charged."""
        with self._session() as s, s.begin():
            rec = s.query(Subscription).with_for_update().filter(Subscription.id == subscription_id).one_or_none()
            if rec is None or rec.status != SUB_PENDING:
                return rec
            rec.direct_debit_contract_id = contract_id
            rec.updated_at = to_utc_for_db(now)
            return rec

    def subscriptions_due(self, now: datetime, limit: int = 1000) -> List[Subscription]:
        """
        Active monthly subscriptions whose next_billing_date has passed.
        """
        now_db = to_utc_for_db(now)
        with self._session() as s:
            return list(
                s.query(Subscription)
                .filter(
                    Subscription.status == SUB_ACTIVE,
                    Subscription.billing_period == "monthly",
                    Subscription.next_billing_date.isnot(None),
                    Subscription.next_billing_date <= now_db,
                    Subscription.end_date.is_(None),
                )
                .order_by(Subscription.next_billing_date.asc())
                .limit(int(limit))
                .all()
            )

    # ──────────────────────────────────────────────────────────────────────
    # Payments
    # ──────────────────────────────────────────────────────────────────────
    def payment_create_pending(
        self,
        *,
        user_id: int,
        subscription_id: Optional[str],
        product_id: str,
        amount: int,
        kind: str,
        max_retries: int,
        now: datetime,
        retry_count: int = 1,
    ) -> Payment:
        """
        Inserts a pending payment. The unique pending_guard turns a concurrent
        second pending payment for the same subscription into ConcurrencyConflict.
        """
        now_db = to_utc_for_db(now)
        try:
            with self._session() as s, s.begin():
                rec = Payment(
                    user_id=user_id,
                    subscription_id=subscription_id,
                    product_id=product_id,
                    amount=amount,
                    kind=kind,
                    status=PAY_PENDING,
                    retry_count=retry_count,
                    max_retries=max_retries,
                    pending_guard=subscription_id,
                    created_at=now_db,
                    updated_at=now_db,
                )
                s.add(rec)
                s.flush()
                return rec
        except IntegrityError as e:
            raise ConcurrencyConflict(f"pending payment already exists for subscription {subscription_id}") from e

    def payment_reopen_for_retry(self, payment_id: str, *, now: datetime) -> Payment:
        """
        failed -> pending on the same row (retry_count + 1), keeping the audit trail.
        Refused once retry_count has reached max_retries.
        """
        try:
            with self._session() as s, s.begin():
                rec = s.query(Payment).with_for_update().filter(Payment.id == payment_id).one_or_none()
                if rec is None:
                    raise LookupError(f"payment {payment_id} not found")
                if rec.status != PAY_FAILED:
                    raise ConcurrencyConflict(f"payment {payment_id} is {rec.status}, not failed")
                if (rec.retry_count or 0) >= rec.max_retries:
                    raise InvalidTransition("payment", rec.status, "retry exhausted")
                rec.status = PAY_PENDING
                rec.retry_count = (rec.retry_count or 0) + 1
                rec.next_retry_at = None
                rec.pending_guard = rec.subscription_id
                rec.updated_at = to_utc_for_db(now)
                s.flush()
                return rec
        except IntegrityError as e:
            raise ConcurrencyConflict(f"pending payment already exists for payment {payment_id}") from e

    def payment_set_authority(self, payment_id: str, authority: str) -> None:
        with self._session() as s, s.begin():
            rec = s.get(Payment, payment_id)
            if rec is not None and rec.status != PAY_COMPLETED:
                rec.gateway_authority = authority

    def payment_mark_completed(
        self,
        payment_id: str,
        *,
        now: datetime,
        ref_id: Optional[str] = None,
        authority: Optional[str] = None,
    ) -> Tuple[Optional[Payment], bool]:
        """
        pending|failed -> completed. Returns (payment, changed); completed rows never change.
        """
        now_db = to_utc_for_db(now)
        with self._session() as s, s.begin():
            rec = s.query(Payment).with_for_update().filter(Payment.id == payment_id).one_or_none()
            if rec is None or rec.status == PAY_COMPLETED:
                return rec, False
            rec.status = PAY_COMPLETED
            rec.paid_at = now_db
            rec.next_retry_at = None
            rec.pending_guard = None
            if ref_id:
                rec.ref_id = str(ref_id)
            if authority:
                rec.gateway_authority = authority
            rec.updated_at = now_db
            return rec, True

    def payment_mark_failed(
        self,
        payment_id: str,
        *,
        now: datetime,
        reason: str,
        next_retry_at: Optional[datetime],
        retry_count: Optional[int] = None,
        authority: Optional[str] = None,
    ) -> Tuple[Optional[Payment], bool]:
        """
        pending|failed -> failed. Returns (payment, changed); completed rows never change.
        retry_count overrides the stored counter (used when an attempt must not count).
        """
        now_db = to_utc_for_db(now)
        with self._session() as s, s.begin():
            rec = s.query(Payment).with_for_update().filter(Payment.id == payment_id).one_or_none()
            if rec is None or rec.status == PAY_COMPLETED:
                return rec, False
            rec.status = PAY_FAILED
            rec.failure_reason = (reason or "")[:2000]
            rec.failed_at = now_db
            rec.next_retry_at = to_utc_for_db(next_retry_at)
            rec.pending_guard = None
            if retry_count is not None:
                rec.retry_count = retry_count
            if authority:
                rec.gateway_authority = authority
            rec.updated_at = now_db
            return rec, True

    def payment_get(self, payment_id: str) -> Optional[Payment]:
        with self._session() as s:
            return s.get(Payment, payment_id)

    def payment_find_by_authority(self, authority: str) -> Optional[Payment]:
        with self._session() as s:
            return (
                s.query(Payment)
                .filter(Payment.gateway_authority == authority)
                .order_by(Payment.created_at.desc())
                .first()
            )

    def payment_pending_for_subscription(self, subscription_id: str) -> Optional[Payment]:
        with self._session() as s:
            return (
                s.query(Payment)
                .filter(Payment.subscription_id == subscription_id, Payment.status == PAY_PENDING)
                .first()
            )

    def payment_latest_failed(self, subscription_id: str, *, kind: Optional[str] = None) -> Optional[Payment]:
        with self._session() as s:
            q = s.query(Payment).filter(Payment.subscription_id == subscription_id, Payment.status == PAY_FAILED)
            if kind:
                q = q.filter(Payment.kind == kind)
            return q.order_by(Payment.updated_at.desc(), Payment.created_at.desc()).first()

    def payment_list_for_subscription(self, subscription_id: str) -> List[Payment]:
        with self._session() as s:
            return list(
                s.query(Payment)
                .filter(Payment.subscription_id == subscription_id)
                .order_by(Payment.created_at.asc())
                .all()
            )

    # ──────────────────────────────────────────────────────────────────────
    # Webhook audit log
    # ──────────────────────────────────────────────────────────────────────
    def webhook_event_create(self, *, source: str, event_type: str, raw_payload: Dict[str, Any],
                             now: datetime) -> WebhookEvent:
        with self._session() as s, s.begin():
            rec = WebhookEvent(
                source=source,
                event_type=event_type,
                raw_payload=json.dumps(raw_payload, ensure_ascii=False, sort_keys=True),
                processed=False,
                created_at=to_utc_for_db(now),
            )
            s.add(rec)
            s.flush()
            return rec

    def webhook_event_mark_processed(
        self,
        event_id: str,
        *,
        now: datetime,
        payment_id: Optional[str] = None,
        processing_error: Optional[str] = None,
    ) -> bool:
        """Sets processed exactly once. Returns False if it was already set."""
        with self._session() as s, s.begin():
            rec = s.query(WebhookEvent).with_for_update().filter(WebhookEvent.id == event_id).one_or_none()
            if rec is None or rec.processed:
                return False
            rec.processed = True
            rec.processed_at = to_utc_for_db(now)
            rec.payment_id = payment_id
            rec.processing_error = processing_error
            return True

    def webhook_event_record_error(self, event_id: str, *, error: str,
                                   payment_id: Optional[str] = None) -> None:
        """Notes an error on an event that stays unprocessed (redelivery expected)."""
        with self._session() as s, s.begin():
            rec = s.query(WebhookEvent).with_for_update().filter(WebhookEvent.id == event_id).one_or_none()
            if rec is None or rec.processed:
                return
            rec.payment_id = payment_id
            rec.processing_error = error

    def webhook_event_mark_forwarded(self, event_id: str, *, forwarded: bool, error: Optional[str],
                                     now: datetime) -> None:
        with self._session() as s, s.begin():
            rec = s.get(WebhookEvent, event_id)
            if rec is None:
                return
            rec.forwarded_to_external = forwarded
            rec.forwarded_at = to_utc_for_db(now) if forwarded else None
            rec.forwarding_error = error

    def webhook_event_get(self, event_id: str) -> Optional[WebhookEvent]:
        with self._session() as s:
            return s.get(WebhookEvent, event_id)

    def webhook_events_list(
        self,
        *,
        source: Optional[str] = None,
        processed: Optional[bool] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[WebhookEvent], int]:
        with self._session() as s:
            q = s.query(WebhookEvent)
            if source:
                q = q.filter(WebhookEvent.source == source)
            if processed is not None:
                q = q.filter(WebhookEvent.processed.is_(processed))
            total = q.count()
            rows = q.order_by(WebhookEvent.created_at.desc()).offset(int(offset)).limit(int(limit)).all()
            return list(rows), total

    # ──────────────────────────────────────────────────────────────────────
    # Outbound endpoints
    # ──────────────────────────────────────────────────────────────────────
    def endpoint_upsert(self, *, url: str, secret: str, event_types: List[str], enabled: bool = True,
                        description: Optional[str] = None) -> WebhookEndpoint:
        with self._session() as s, s.begin():
            rec = s.query(WebhookEndpoint).filter(WebhookEndpoint.url == url).one_or_none()
            if rec is None:
                rec = WebhookEndpoint(url=url)
                s.add(rec)
            rec.secret = secret
            rec.event_types_json = json.dumps(list(event_types or ["*"]))
            rec.enabled = enabled
            rec.description = description
            s.flush()
            return rec

    def endpoints_list(self, *, enabled_only: bool = True) -> List[WebhookEndpoint]:
        with self._session() as s:
            q = s.query(WebhookEndpoint)
            if enabled_only:
                q = q.filter(WebhookEndpoint.enabled.is_(True))
            return list(q.order_by(WebhookEndpoint.created_at.asc()).all())

    def endpoint_delete(self, endpoint_id: str) -> bool:
        with self._session() as s, s.begin():
            rec = s.get(WebhookEndpoint, endpoint_id)
            if rec is None:
                return False
            s.delete(rec)
            return True


# Global repository (billing DB)
_repo = BillingRepository(SessionLocal)

# ========= Facade =========
def init_billing_db() -> None:
    init_schema()


def get_repo() -> BillingRepository:
    return _repo

