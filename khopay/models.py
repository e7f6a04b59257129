"""
KhoAugment Pay – SQLAlchemy Models

- Payment intents (one attempt to pay one order via one method)
- Payment ledger (append-only audit trail of state transitions)
- Refunds (provider or cash refunds against succeeded intents)
- Orders (owned by the order subsystem; payment columns only)
- Webhook events (raw inbound provider callbacks)
"""
import uuid
from enum import Enum

from sqlalchemy import (
    JSON, BigInteger, Column, DateTime, ForeignKey, Index, Integer, String, Text,
    UniqueConstraint, event,
)

from .db import Base
from .timeutil import as_utc, utcnow


class IntentStatus(str, Enum):
    CREATED = "created"
    REDIRECTED = "redirected"
    AWAITING_CALLBACK = "awaiting_callback"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    IntentStatus.SUCCEEDED.value,
    IntentStatus.FAILED.value,
    IntentStatus.EXPIRED.value,
    IntentStatus.CANCELLED.value,
})

NON_TERMINAL_STATUSES = frozenset({
    IntentStatus.CREATED.value,
    IntentStatus.REDIRECTED.value,
    IntentStatus.AWAITING_CALLBACK.value,
})


class PaymentMethod(str, Enum):
    VNPAY = "vnpay"
    MOMO = "momo"
    ZALOPAY = "zalopay"
    CASH = "cash"
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"


GATEWAY_METHODS = frozenset({
    PaymentMethod.VNPAY.value,
    PaymentMethod.MOMO.value,
    PaymentMethod.ZALOPAY.value,
})


class LedgerCause(str, Enum):
    INITIATE = "initiate"
    CALLBACK = "callback"
    VERIFY_POLL = "verify-poll"
    EXPIRY_SWEEP = "expiry-sweep"
    MANUAL = "manual"
    REFUND = "refund"


def _new_intent_id() -> str:
    return uuid.uuid4().hex


# =====================================================
# PAYMENT INTENT
# =====================================================

class PaymentIntent(Base):
    __tablename__ = "payment_intents"
    __table_args__ = (
        UniqueConstraint("method", "provider_ref", name="uq_payment_intents_method_provider_ref"),
        Index("ix_payment_intents_status_expires_at", "status", "expires_at"),
    )

    id = Column(String(32), primary_key=True, default=_new_intent_id)
    order_id = Column(String(64), nullable=False, index=True)

    amount = Column(BigInteger, nullable=False)                 # VND, integer
    currency = Column(String(8), nullable=False, default="VND")
    method = Column(String(24), nullable=False)
    status = Column(String(24), nullable=False, default=IntentStatus.CREATED.value)

    # "<order_id>:<method>" while non-terminal, NULL afterwards.
    active_key = Column(String(96), unique=True, nullable=True)

    provider_ref = Column(String(64), nullable=True, index=True)
    provider_txn_id = Column(String(64), nullable=True)

    # Redirect target returned by the gateway, replayed on idempotent requests
    redirect_url = Column(Text, nullable=True)
    qr_payload = Column(Text, nullable=True)
    deeplink = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    @staticmethod
    def make_active_key(order_id: str, method: str) -> str:
        return f"{order_id}:{method}"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_expired(self, now) -> bool:
        return as_utc(self.expires_at) <= as_utc(now)

    def __repr__(self):
        return f"<PaymentIntent(id={self.id}, order={self.order_id}, method={self.method}, status={self.status})>"


# =====================================================
# PAYMENT LEDGER (append-only)
# =====================================================

class LedgerEntry(Base):
    __tablename__ = "payment_ledger"
    __table_args__ = (
        Index("ix_payment_ledger_intent_applied", "intent_id", "applied_at", "id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    intent_id = Column(String(32), ForeignKey("payment_intents.id", ondelete="RESTRICT"),
                       nullable=False)

    from_status = Column(String(24), nullable=True)
    to_status = Column(String(24), nullable=False)
    cause = Column(String(24), nullable=False)

    # NULL for effective transitions; a label for recorded anomalies
    anomaly = Column(String(48), nullable=True, index=True)
    provider_txn_id = Column(String(64), nullable=True)
    detail = Column(JSON, nullable=True)

    applied_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self):
        return (
            f"<LedgerEntry(intent={self.intent_id}, {self.from_status}->{self.to_status}, "
            f"cause={self.cause}, anomaly={self.anomaly})>"
        )


class LedgerWriteError(RuntimeError):
    pass


@event.listens_for(LedgerEntry, "before_update")
def _ledger_rows_are_immutable(mapper, connection, target):
    raise LedgerWriteError(f"ledger entry {target.id} is immutable")


@event.listens_for(LedgerEntry, "before_delete")
def _ledger_rows_are_permanent(mapper, connection, target):
    raise LedgerWriteError(f"ledger entry {target.id} cannot be deleted")


# =====================================================
# REFUND (money returned against a succeeded intent)
# =====================================================

class Refund(Base):
    __tablename__ = "payment_refunds"

    id = Column(String(32), primary_key=True, default=_new_intent_id)
    intent_id = Column(String(32), ForeignKey("payment_intents.id", ondelete="RESTRICT"),
                       nullable=False, index=True)

    amount = Column(BigInteger, nullable=False)                 # VND
    status = Column(String(16), nullable=False, default="pending")  # pending/succeeded/failed
    refund_ref = Column(String(64), nullable=True)              # merchant refund id sent to the provider
    provider_refund_id = Column(String(64), nullable=True)
    reason = Column(Text, nullable=True)
    actor = Column(String(64), nullable=True)
    detail = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<Refund(id={self.id}, intent={self.intent_id}, amount={self.amount}, status={self.status})>"


# =====================================================
# ORDER (payment-facing columns of the order subsystem's table)
# =====================================================

class Order(Base):
    __tablename__ = "orders"

    id = Column(String(64), primary_key=True)
    total = Column(BigInteger, nullable=False)                  # VND
    payment_status = Column(String(16), nullable=False, default="pending")  # pending/paid/failed/refunded/partial_refund
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


# =====================================================
# WEBHOOK EVENT (raw inbound callbacks)
# =====================================================

class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(String(32), nullable=False, index=True)
    headers = Column(JSON, nullable=True)
    payload = Column(Text, nullable=True)

    status = Column(String(16), nullable=False, default="received")  # received/processed/rejected/failed
    disposition = Column(String(32), nullable=True)
    error = Column(Text, nullable=True)

    received_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    processed_at = Column(DateTime(timezone=True), nullable=True)
