"""
Payment orchestrator: owns the payment intent state machine.

    created --initiate--> redirected --callback--> awaiting_callback
    awaiting_callback --verified success, amount matches--> succeeded
    awaiting_callback --failure or amount mismatch--> failed
    any non-terminal --TTL elapsed--> expired
    any non-terminal --cancel--> cancelled
    succeeded --refund--> succeeded (refund row + cause=refund ledger row)

Callbacks and verify-polls converge on apply_outcome(), the only path that
settles an intent. Every status change is a compare-and-set UPDATE plus a
ledger row, committed together. Within one process, callers for the same
intent are serialized by a per-intent lock.
"""
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..exceptions import (
    AlreadyTerminal, AmountMismatch, InvalidPaymentRequest, PaymentError, ProviderUnavailable,
    RefundNotAllowed, SignatureInvalid, UnknownIntent, UnsupportedMethod,
)
from ..logging_config import get_logger
from ..models import (
    GATEWAY_METHODS, IntentStatus, LedgerCause, PaymentIntent, PaymentMethod, Refund,
)
from ..psp.adapter import (
    Disposition, OutcomeResult, PaymentOutcome, RedirectTarget, RefundOutcome, RefundStatus,
)
from ..psp.dispatcher import PSPDispatcher
from ..timeutil import as_utc, utcnow
from . import ledger, order_service

logger = get_logger(__name__)

MAX_CAS_ATTEMPTS = 3

# Anomaly labels written to the ledger
ANOMALY_LATE_CALLBACK = "late_callback"
ANOMALY_DUPLICATE = "duplicate_callback"
ANOMALY_DOUBLE_PAYMENT = "possible_double_payment"
ANOMALY_AMOUNT_MISMATCH = "amount_mismatch"


class _StaleTransition(Exception):
    """The compare-and-set UPDATE matched no row: status moved underneath us."""


class IntentLockRegistry:
    """Per-intent mutexes; entries are dropped once no caller holds or waits on them."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, list] = {}

    @contextmanager
    def hold(self, intent_id: str):
        with self._guard:
            entry = self._locks.get(intent_id)
            if entry is None:
                entry = self._locks[intent_id] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(intent_id, None)

    def __len__(self):
        return len(self._locks)


_intent_locks = IntentLockRegistry()


@dataclass
class ApplyResult:
    intent: PaymentIntent
    disposition: Disposition
    applied: bool = False
    anomaly: Optional[str] = None


class PaymentOrchestrator:
    def __init__(
        self,
        dispatcher=PSPDispatcher,
        ttl_minutes: Optional[int] = None,
        min_gateway_amount: Optional[int] = None,
        locks: Optional[IntentLockRegistry] = None,
    ):
        self.dispatcher = dispatcher
        self.ttl = timedelta(minutes=ttl_minutes or settings.PAYMENT_INTENT_TTL_MINUTES)
        self.min_gateway_amount = (
            settings.MIN_GATEWAY_AMOUNT if min_gateway_amount is None else min_gateway_amount
        )
        self.locks = locks or _intent_locks

    # ------------------------------------------------------------------
    # lookups
    # ------------------------------------------------------------------

    def get_intent(self, db: Session, intent_id: str) -> PaymentIntent:
        intent = db.query(PaymentIntent).filter(PaymentIntent.id == intent_id).first()
        if not intent:
            raise UnknownIntent(f"Payment intent {intent_id} not found", intent_id=intent_id)
        return intent

    def find_intent(self, db: Session, order_id: str, method: str) -> Optional[PaymentIntent]:
        """The active intent for (order, method), else the most recent one."""
        active = (
            db.query(PaymentIntent)
            .filter(PaymentIntent.active_key == PaymentIntent.make_active_key(order_id, method))
            .first()
        )
        if active:
            return active
        return (
            db.query(PaymentIntent)
            .filter(PaymentIntent.order_id == order_id, PaymentIntent.method == method)
            .order_by(PaymentIntent.created_at.desc(), PaymentIntent.id.desc())
            .first()
        )

    def _resolve(self, db: Session, outcome: PaymentOutcome) -> PaymentIntent:
        intent = None
        if outcome.intent_id:
            intent = db.query(PaymentIntent).filter(PaymentIntent.id == outcome.intent_id).first()
        elif outcome.provider_ref:
            intent = (
                db.query(PaymentIntent)
                .filter(
                    PaymentIntent.method == outcome.provider,
                    PaymentIntent.provider_ref == outcome.provider_ref,
                )
                .first()
            )
            if intent is None:
                # Reference never stored (create response lost); refs embed the intent id
                candidate = outcome.provider_ref.rsplit("_", 1)[-1]
                intent = (
                    db.query(PaymentIntent)
                    .filter(PaymentIntent.id == candidate, PaymentIntent.method == outcome.provider)
                    .first()
                )

        if intent is None or intent.method != outcome.provider:
            raise UnknownIntent(
                "No payment intent matches the outcome",
                provider=outcome.provider,
                intent_id=outcome.intent_id,
                provider_ref=outcome.provider_ref,
            )
        return intent

    # ------------------------------------------------------------------
    # creation / initiation
    # ------------------------------------------------------------------

    def create_intent(self, db: Session, order_id: str, amount: int, method: str) -> PaymentIntent:
        """
        Return the non-terminal intent for (order_id, method), creating one if none exists.

        Raises:
            InvalidPaymentRequest: bad method or amount, or the order is already paid or refunded
            UnknownOrder / AmountMismatch: amount does not match the order total
        """
        method = (method or "").lower()
        if method not in {m.value for m in PaymentMethod}:
            raise InvalidPaymentRequest(f"Unknown payment method '{method}'", method=method)
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise InvalidPaymentRequest("Amount must be a positive integer (VND)", amount=amount)
        if method in GATEWAY_METHODS and amount < self.min_gateway_amount:
            raise InvalidPaymentRequest(
                f"Minimum amount for {method} is {self.min_gateway_amount} VND",
                amount=amount,
                method=method,
            )

        order = order_service.confirm_amount(db, order_id, amount)
        if order.payment_status in order_service.SETTLED_STATUSES:
            raise InvalidPaymentRequest(f"Order {order_id} is already {order.payment_status}", order_id=order_id)

        now = utcnow()
        existing = self.find_intent(db, order_id, method)
        if existing is not None and not existing.is_terminal:
            if existing.is_expired(now):
                self._expire_one(db, existing.id, now)
            elif int(existing.amount) != amount:
                self.cancel(db, existing.id, reason="amount_changed")
            else:
                return existing

        intent = PaymentIntent(
            order_id=order_id,
            amount=amount,
            currency="VND",
            method=method,
            status=IntentStatus.CREATED.value,
            active_key=PaymentIntent.make_active_key(order_id, method),
            created_at=now,
            expires_at=now + self.ttl,
            updated_at=now,
        )
        try:
            db.add(intent)
            db.flush()
            ledger.append(db, intent.id, None, IntentStatus.CREATED.value, LedgerCause.INITIATE.value,
                          detail={"amount": amount, "method": method}, applied_at=now)
            if order.payment_status == order_service.PAYMENT_FAILED:
                order_service.mark_payment_status(db, order_id, order_service.PAYMENT_PENDING)
            db.commit()
        except IntegrityError:
            # Lost the race on active_key; the winner's intent is the answer
            db.rollback()
            winner = (
                db.query(PaymentIntent)
                .filter(PaymentIntent.active_key == PaymentIntent.make_active_key(order_id, method))
                .first()
            )
            if winner is None:
                raise
            logger.info("payment_intent_create_raced", order_id=order_id, method=method, intent_id=winner.id)
            return winner

        db.refresh(intent)
        logger.info(
            "payment_intent_created",
            intent_id=intent.id,
            order_id=order_id,
            method=method,
            amount=amount,
        )
        return intent

    def initiate(
        self,
        db: Session,
        intent_id: str,
        return_url: Optional[str] = None,
        client_ip: Optional[str] = None,
        locale: Optional[str] = None,
    ) -> Tuple[PaymentIntent, RedirectTarget]:
        """
        created -> redirected. Re-initiating returns the stored target.
        Adapter errors propagate and leave the intent in created.
        """
        intent = self.get_intent(db, intent_id)
        if intent.method not in GATEWAY_METHODS:
            raise UnsupportedMethod(f"{intent.method} payments have no gateway redirect", method=intent.method)

        with self.locks.hold(intent.id):
            db.refresh(intent)
            if intent.is_terminal:
                raise AlreadyTerminal(f"Payment intent {intent.id} is {intent.status}",
                                      intent_id=intent.id, status=intent.status)
            if intent.status != IntentStatus.CREATED.value:
                return intent, self._stored_target(intent)

            adapter = self.dispatcher.get_adapter(intent.method)
            try:
                target = adapter.build_redirect(intent, return_url=return_url, client_ip=client_ip, locale=locale)
            except Exception as e:
                logger.warning(
                    "payment_initiate_failed",
                    intent_id=intent.id,
                    method=intent.method,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                raise

            try:
                self._transition(
                    db, intent, IntentStatus.REDIRECTED.value, LedgerCause.INITIATE.value,
                    extra={
                        "provider_ref": target.provider_ref,
                        "redirect_url": target.url,
                        "qr_payload": target.qr_payload,
                        "deeplink": target.deeplink,
                    },
                    detail={"provider_ref": target.provider_ref},
                )
                db.commit()
            except _StaleTransition:
                db.rollback()
                db.refresh(intent)
                return intent, self._stored_target(intent)
            except Exception:
                db.rollback()
                raise

        logger.info("payment_intent_redirected", intent_id=intent.id, method=intent.method,
                    provider_ref=target.provider_ref)
        return intent, target

    @staticmethod
    def _stored_target(intent: PaymentIntent) -> RedirectTarget:
        return RedirectTarget(
            provider_ref=intent.provider_ref,
            url=intent.redirect_url,
            qr_payload=intent.qr_payload,
            deeplink=intent.deeplink,
        )

    # ------------------------------------------------------------------
    # settlement
    # ------------------------------------------------------------------

    def apply_outcome(self, db: Session, outcome: PaymentOutcome, cause: str = LedgerCause.CALLBACK.value) -> ApplyResult:
        """
        Apply a normalized provider outcome exactly once.

        Raises:
            SignatureInvalid: never applied, nothing written
            UnknownIntent: no intent matches, nothing written
            AlreadyTerminal: intent already settled; an anomaly entry is recorded
            AmountMismatch: manual confirmation with the wrong amount (nothing written)
        """
        cause = LedgerCause(cause).value
        if not outcome.signature_valid:
            logger.warning(
                "payment_signature_invalid",
                provider=outcome.provider,
                provider_ref=outcome.provider_ref,
                cause=cause,
            )
            raise SignatureInvalid(provider=outcome.provider, provider_ref=outcome.provider_ref)

        try:
            intent = self._resolve(db, outcome)
        except UnknownIntent:
            logger.warning(
                "payment_unknown_intent",
                provider=outcome.provider,
                provider_ref=outcome.provider_ref,
                intent_id=outcome.intent_id,
                cause=cause,
            )
            raise

        with self.locks.hold(intent.id):
            for _ in range(MAX_CAS_ATTEMPTS):
                db.refresh(intent)
                try:
                    return self._apply_locked(db, intent, outcome, cause)
                except _StaleTransition:
                    db.rollback()
                    logger.info("payment_transition_raced", intent_id=intent.id, cause=cause)
                except Exception:
                    db.rollback()
                    raise

        raise AlreadyTerminal(f"Payment intent {intent.id} changed concurrently", intent_id=intent.id)

    def _apply_locked(self, db: Session, intent: PaymentIntent, outcome: PaymentOutcome, cause: str) -> ApplyResult:
        now = utcnow()
        detail = {
            "provider": outcome.provider,
            "result": outcome.result.value,
            "amount_confirmed": outcome.amount_confirmed,
            "reason": outcome.reason,
        }

        if intent.is_terminal:
            label = self._terminal_anomaly(intent, outcome)
            ledger.append(db, intent.id, intent.status, intent.status, cause, anomaly=label,
                          provider_txn_id=outcome.provider_txn_id, detail=detail, applied_at=now)
            db.commit()
            logger.warning(
                "payment_anomaly",
                anomaly=label,
                intent_id=intent.id,
                order_id=intent.order_id,
                status=intent.status,
                outcome=outcome.result.value,
                cause=cause,
            )
            raise AlreadyTerminal(f"Payment intent {intent.id} is already {intent.status}",
                                  intent_id=intent.id, status=intent.status, anomaly=label)

        if outcome.result == OutcomeResult.UNKNOWN:
            # A pending callback still proves the customer reached the provider
            if cause == LedgerCause.CALLBACK.value and intent.status != IntentStatus.AWAITING_CALLBACK.value:
                self._transition(db, intent, IntentStatus.AWAITING_CALLBACK.value, cause, detail=detail, now=now)
                db.commit()
                return ApplyResult(intent, Disposition.APPLIED, applied=True)
            return ApplyResult(intent, Disposition.NO_CHANGE)

        amount_ok = outcome.amount_confirmed is not None and int(outcome.amount_confirmed) == int(intent.amount)
        if outcome.is_success and not amount_ok and cause == LedgerCause.MANUAL.value:
            raise AmountMismatch(
                f"Confirmed amount {outcome.amount_confirmed} does not match {intent.amount}",
                intent_id=intent.id,
                expected=int(intent.amount),
                received=outcome.amount_confirmed,
            )

        if intent.status != IntentStatus.AWAITING_CALLBACK.value:
            self._transition(db, intent, IntentStatus.AWAITING_CALLBACK.value, cause, detail=detail, now=now)

        anomaly = None
        if outcome.is_success and amount_ok:
            self._transition(
                db, intent, IntentStatus.SUCCEEDED.value, cause,
                extra={"provider_txn_id": outcome.provider_txn_id} if outcome.provider_txn_id else None,
                provider_txn_id=outcome.provider_txn_id,
                detail=detail,
                now=now,
            )
            order_service.mark_payment_status(db, intent.order_id, order_service.PAYMENT_PAID)
            if self._other_success_exists(db, intent):
                anomaly = ANOMALY_DOUBLE_PAYMENT
        else:
            self._transition(db, intent, IntentStatus.FAILED.value, cause,
                             extra={"provider_txn_id": outcome.provider_txn_id} if outcome.provider_txn_id else None,
                             provider_txn_id=outcome.provider_txn_id, detail=detail, now=now)
            order_service.mark_payment_status(db, intent.order_id, order_service.PAYMENT_FAILED)
            if outcome.is_success:
                anomaly = ANOMALY_AMOUNT_MISMATCH

        if anomaly:
            ledger.append(db, intent.id, intent.status, intent.status, cause, anomaly=anomaly,
                          provider_txn_id=outcome.provider_txn_id,
                          detail={**detail, "expected_amount": int(intent.amount)}, applied_at=now)
        db.commit()

        if anomaly:
            logger.warning("payment_anomaly", anomaly=anomaly, intent_id=intent.id,
                           order_id=intent.order_id, status=intent.status, cause=cause)
        logger.info(
            "payment_outcome_applied",
            intent_id=intent.id,
            order_id=intent.order_id,
            status=intent.status,
            cause=cause,
            provider_txn_id=outcome.provider_txn_id,
        )
        disposition = Disposition.AMOUNT_MISMATCH if anomaly == ANOMALY_AMOUNT_MISMATCH else Disposition.APPLIED
        return ApplyResult(intent, disposition, applied=True, anomaly=anomaly)

    @staticmethod
    def _terminal_anomaly(intent: PaymentIntent, outcome: PaymentOutcome) -> str:
        """Duplicate only when the outcome repeats the one that closed the intent."""
        same_txn = bool(outcome.provider_txn_id) and outcome.provider_txn_id == intent.provider_txn_id
        if intent.status == IntentStatus.SUCCEEDED.value and outcome.is_success:
            if outcome.provider_txn_id and intent.provider_txn_id and not same_txn:
                return ANOMALY_DOUBLE_PAYMENT
            return ANOMALY_DUPLICATE
        if intent.status == IntentStatus.FAILED.value:
            # a rejected success (amount mismatch) repeats with the same provider txn
            if outcome.result == OutcomeResult.FAILURE or (outcome.is_success and same_txn):
                return ANOMALY_DUPLICATE
        # expired, cancelled, or an outcome contradicting the applied one
        return ANOMALY_LATE_CALLBACK

    @staticmethod
    def _other_success_exists(db: Session, intent: PaymentIntent) -> bool:
        return (
            db.query(PaymentIntent.id)
            .filter(
                PaymentIntent.order_id == intent.order_id,
                PaymentIntent.id != intent.id,
                PaymentIntent.status == IntentStatus.SUCCEEDED.value,
            )
            .first()
            is not None
        )

    def _transition(
        self,
        db: Session,
        intent: PaymentIntent,
        to_status: str,
        cause: str,
        extra: Optional[dict] = None,
        provider_txn_id: Optional[str] = None,
        detail: Optional[dict] = None,
        now: Optional[datetime] = None,
    ):
        """Compare-and-set the status and stage the matching ledger row."""
        now = now or utcnow()
        from_status = intent.status
        values = {"status": to_status, "updated_at": now}
        if to_status in (IntentStatus.SUCCEEDED.value, IntentStatus.FAILED.value,
                         IntentStatus.EXPIRED.value, IntentStatus.CANCELLED.value):
            values["active_key"] = None
            values["resolved_at"] = now
        if extra:
            values.update(extra)

        rows = (
            db.query(PaymentIntent)
            .filter(PaymentIntent.id == intent.id, PaymentIntent.status == from_status)
            .update(values, synchronize_session="evaluate")
        )
        if rows != 1:
            raise _StaleTransition(intent.id)

        ledger.append(db, intent.id, from_status, to_status, cause,
                      provider_txn_id=provider_txn_id, detail=detail, applied_at=now)

    # ------------------------------------------------------------------
    # verify-poll, manual operations, expiry
    # ------------------------------------------------------------------

    def verify(self, db: Session, intent_id: str) -> ApplyResult:
        """
        Poll the provider and apply the answer. Unknown answers change nothing.

        Raises:
            ProviderUnavailable / ProviderError / AdapterConfigError from the adapter
        """
        intent = self.get_intent(db, intent_id)
        if intent.method not in GATEWAY_METHODS:
            raise UnsupportedMethod(f"{intent.method} payments cannot be verified with a provider",
                                    method=intent.method)
        if intent.is_terminal:
            return ApplyResult(intent, Disposition.NO_CHANGE)

        adapter = self.dispatcher.get_adapter(intent.method)
        provider_ref = intent.provider_ref or adapter.provider_ref_for(intent)
        outcome = adapter.verify_status(provider_ref, issued_at=as_utc(intent.created_at))
        outcome.intent_id = intent.id

        logger.info(
            "payment_verify_polled",
            intent_id=intent.id,
            method=intent.method,
            result=outcome.result.value,
            reason=outcome.reason,
        )
        if outcome.result == OutcomeResult.UNKNOWN:
            return ApplyResult(intent, Disposition.NO_CHANGE)

        try:
            return self.apply_outcome(db, outcome, LedgerCause.VERIFY_POLL.value)
        except AlreadyTerminal:
            db.refresh(intent)
            return ApplyResult(intent, Disposition.DUPLICATE)

    def confirm_offline(self, db: Session, intent_id: str, amount: int, actor: Optional[str] = None) -> ApplyResult:
        """Staff confirmation of a cash, card or bank transfer payment."""
        intent = self.get_intent(db, intent_id)
        if intent.method in GATEWAY_METHODS:
            raise UnsupportedMethod(f"{intent.method} payments are settled by the provider", method=intent.method)

        outcome = PaymentOutcome(
            provider=intent.method,
            result=OutcomeResult.SUCCESS,
            signature_valid=True,
            amount_confirmed=amount,
            intent_id=intent.id,
            reason=f"confirmed by {actor or 'staff'}",
        )
        return self.apply_outcome(db, outcome, LedgerCause.MANUAL.value)

    def cancel(self, db: Session, intent_id: str, reason: Optional[str] = None, actor: Optional[str] = None) -> PaymentIntent:
        """
        Cancel a non-terminal intent. Once redirected this is advisory: a
        provider success arriving later is recorded as a late_callback anomaly.
        """
        intent = self.get_intent(db, intent_id)
        with self.locks.hold(intent.id):
            db.refresh(intent)
            if intent.is_terminal:
                raise AlreadyTerminal(f"Payment intent {intent.id} is already {intent.status}",
                                      intent_id=intent.id, status=intent.status)
            try:
                self._transition(db, intent, IntentStatus.CANCELLED.value, LedgerCause.MANUAL.value,
                                 detail={"reason": reason, "actor": actor})
                db.commit()
            except _StaleTransition:
                db.rollback()
                raise AlreadyTerminal(f"Payment intent {intent.id} changed concurrently", intent_id=intent.id)
            except Exception:
                db.rollback()
                raise

        logger.info("payment_intent_cancelled", intent_id=intent.id, reason=reason, actor=actor)
        return intent

    def expire_due(self, db: Session, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[str]:
        """Expiry sweep: move every overdue non-terminal intent to expired."""
        now = as_utc(now) if now else utcnow()
        q = (
            db.query(PaymentIntent.id)
            .filter(
                PaymentIntent.status.in_([
                    IntentStatus.CREATED.value,
                    IntentStatus.REDIRECTED.value,
                    IntentStatus.AWAITING_CALLBACK.value,
                ]),
                PaymentIntent.expires_at <= now,
            )
            .order_by(PaymentIntent.expires_at.asc())
        )
        if limit:
            q = q.limit(limit)

        expired = []
        for (intent_id,) in q.all():
            if self._expire_one(db, intent_id, now):
                expired.append(intent_id)

        if expired:
            logger.info("payment_intents_expired", count=len(expired))
        return expired

    def _expire_one(self, db: Session, intent_id: str, now: datetime) -> bool:
        intent = self.get_intent(db, intent_id)
        with self.locks.hold(intent_id):
            db.refresh(intent)
            if intent.is_terminal or not intent.is_expired(now):
                return False
            try:
                self._transition(db, intent, IntentStatus.EXPIRED.value, LedgerCause.EXPIRY_SWEEP.value,
                                 detail={"expires_at": as_utc(intent.expires_at).isoformat()})
                db.commit()
            except _StaleTransition:
                db.rollback()
                return False
            except Exception:
                db.rollback()
                raise
        logger.info("payment_intent_expired", intent_id=intent_id, order_id=intent.order_id)
        return True

    # ------------------------------------------------------------------
    # refunds
    # ------------------------------------------------------------------

    def refund(
        self,
        db: Session,
        intent_id: str,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> Refund:
        """
        Return money against a succeeded intent. The intent stays succeeded;
        each settled refund adds a cause=refund ledger row and moves the order
        to refunded or partial_refund.

        Gateway refunds are sent once. A pending Refund row is committed
        before the provider call, so a timeout leaves it pending rather than
        lost. Offline methods settle immediately (money returned at the till).

        Raises:
            RefundNotAllowed: intent not succeeded, or amount out of range
            UnsupportedMethod: the gateway has no refund API
            ProviderUnavailable / ProviderError / AdapterConfigError from the adapter
        """
        intent = self.get_intent(db, intent_id)
        adapter = None
        if intent.method in GATEWAY_METHODS:
            adapter = self.dispatcher.get_adapter(intent.method)
            if not adapter.supports_refund:
                raise UnsupportedMethod(f"{intent.method} refunds are not supported", method=intent.method)

        with self.locks.hold(intent.id):
            db.refresh(intent)
            if intent.status != IntentStatus.SUCCEEDED.value:
                raise RefundNotAllowed(f"Payment intent {intent.id} is {intent.status}, not succeeded",
                                       intent_id=intent.id, status=intent.status)

            refundable = int(intent.amount) - self._refunded_total(db, intent.id, include_pending=True)
            amount = refundable if amount is None else int(amount)
            if amount <= 0 or amount > refundable:
                raise RefundNotAllowed(f"Refund amount {amount} is outside 1..{refundable}",
                                       intent_id=intent.id, requested=amount, refundable=refundable)

            refund = Refund(intent_id=intent.id, amount=amount, status=RefundStatus.PENDING.value,
                            reason=reason, actor=actor)
            db.add(refund)
            db.commit()

            logger.info("payment_refund_requested", intent_id=intent.id, refund_id=refund.id,
                        amount=amount, method=intent.method, actor=actor)

            if adapter is None:
                outcome = RefundOutcome(
                    provider=intent.method,
                    status=RefundStatus.SUCCEEDED,
                    refund_ref=refund.id,
                    reason=f"refunded by {actor or 'staff'}",
                )
            else:
                try:
                    outcome = adapter.refund(intent, amount, reason=reason, refund_ref=refund.id)
                except ProviderUnavailable:
                    logger.warning("payment_refund_unconfirmed", intent_id=intent.id, refund_id=refund.id)
                    raise
                except PaymentError as e:
                    refund.status = RefundStatus.FAILED.value
                    refund.resolved_at = utcnow()
                    refund.detail = {"error": e.message}
                    db.commit()
                    raise

            self._settle_refund(db, intent, refund, outcome)
        return refund

    def _settle_refund(self, db: Session, intent: PaymentIntent, refund: Refund, outcome: RefundOutcome):
        now = utcnow()
        refund.status = outcome.status.value
        refund.refund_ref = outcome.refund_ref
        refund.provider_refund_id = outcome.provider_refund_id
        refund.detail = {"reason": outcome.reason, "provider": outcome.raw or None}
        if outcome.status != RefundStatus.PENDING:
            refund.resolved_at = now

        refunded = None
        if outcome.status == RefundStatus.SUCCEEDED:
            db.flush()
            refunded = self._refunded_total(db, intent.id)
            ledger.append(
                db, intent.id, intent.status, intent.status, LedgerCause.REFUND.value,
                provider_txn_id=outcome.provider_refund_id,
                detail={
                    "refund_id": refund.id,
                    "amount": int(refund.amount),
                    "refunded_total": refunded,
                    "reason": refund.reason,
                    "actor": refund.actor,
                },
                applied_at=now,
            )
            order_status = (
                order_service.PAYMENT_REFUNDED if refunded >= int(intent.amount)
                else order_service.PAYMENT_PARTIAL_REFUND
            )
            order_service.mark_payment_status(db, intent.order_id, order_status)
        db.commit()

        logger.info(
            "payment_refund_settled",
            intent_id=intent.id,
            refund_id=refund.id,
            status=refund.status,
            refunded_total=refunded,
            reason=outcome.reason,
        )

    @staticmethod
    def _refunded_total(db: Session, intent_id: str, include_pending: bool = False) -> int:
        statuses = [RefundStatus.SUCCEEDED.value]
        if include_pending:
            statuses.append(RefundStatus.PENDING.value)
        total = (
            db.query(func.coalesce(func.sum(Refund.amount), 0))
            .filter(Refund.intent_id == intent_id, Refund.status.in_(statuses))
            .scalar()
        )
        return int(total or 0)

    def refunds_for(self, db: Session, intent_id: str) -> List[Refund]:
        self.get_intent(db, intent_id)
        return (
            db.query(Refund)
            .filter(Refund.intent_id == intent_id)
            .order_by(Refund.created_at.asc())
            .all()
        )


_orchestrator: Optional[PaymentOrchestrator] = None


def get_orchestrator() -> PaymentOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = PaymentOrchestrator()
    return _orchestrator
