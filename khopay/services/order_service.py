"""
Order collaborator.

The order subsystem owns the orders table; payments only confirm the total
and write payment_status, inside the caller's transaction.
"""
from sqlalchemy.orm import Session

from ..exceptions import AmountMismatch, UnknownOrder
from ..logging_config import get_logger
from ..models import Order

logger = get_logger(__name__)

PAYMENT_PAID = "paid"
PAYMENT_FAILED = "failed"
PAYMENT_PENDING = "pending"
PAYMENT_REFUNDED = "refunded"
PAYMENT_PARTIAL_REFUND = "partial_refund"

SETTLED_STATUSES = frozenset({PAYMENT_PAID, PAYMENT_PARTIAL_REFUND, PAYMENT_REFUNDED})

# once paid, an order only moves forward through refunds
_AFTER_PAID = {
    PAYMENT_PAID: {PAYMENT_PAID, PAYMENT_PARTIAL_REFUND, PAYMENT_REFUNDED},
    PAYMENT_PARTIAL_REFUND: {PAYMENT_PARTIAL_REFUND, PAYMENT_REFUNDED},
    PAYMENT_REFUNDED: {PAYMENT_REFUNDED},
}


def get_order(db: Session, order_id: str) -> Order:
    order = db.query(Order).filter(Order.id == order_id).first()
    if not order:
        raise UnknownOrder(f"Order {order_id} not found", order_id=order_id)
    return order


def confirm_amount(db: Session, order_id: str, amount: int) -> Order:
    """Raise AmountMismatch unless amount equals the order total."""
    order = get_order(db, order_id)
    if int(order.total) != int(amount):
        raise AmountMismatch(
            f"Amount {amount} does not match order total {order.total}",
            order_id=order_id,
            expected=int(order.total),
            received=int(amount),
        )
    return order


def mark_payment_status(db: Session, order_id: str, payment_status: str) -> None:
    """Stage the order's payment status change. Missing orders are logged, not raised."""
    order = db.query(Order).filter(Order.id == order_id).first()
    if not order:
        logger.warning("order_missing_for_payment_update", order_id=order_id, payment_status=payment_status)
        return
    allowed = _AFTER_PAID.get(order.payment_status)
    if allowed is not None and payment_status not in allowed:
        return
    order.payment_status = payment_status
