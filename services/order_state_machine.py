"""Order status transitions and their inventory side effects."""
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from sqlalchemy.orm import Session

from errors import IllegalTransition
from models import Order
from monitoring import order_transitions_counter
from services.inventory_ledger import InventoryLedger

logger = logging.getLogger(__name__)


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


# State machine transition map
_VALID_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED, OrderStatus.REFUNDED},
    OrderStatus.DELIVERED: {OrderStatus.REFUNDED},  # Financial only
    OrderStatus.CANCELLED: set(),  # Terminal
    OrderStatus.REFUNDED: set(),  # Terminal
}

# Statuses in which the order still holds its checkout reservation
RESERVING_STATES = {OrderStatus.PENDING, OrderStatus.PROCESSING}

_TIMESTAMP_FIELDS = {
    OrderStatus.SHIPPED: Order.shipped_at,
    OrderStatus.DELIVERED: Order.delivered_at,
    OrderStatus.CANCELLED: Order.cancelled_at,
    OrderStatus.REFUNDED: Order.refunded_at,
}


class OrderStateMachine:
    """Applies order status transitions."""

    def __init__(self, ledger: InventoryLedger):
        self.ledger = ledger

    def check(self, order: Order, target: OrderStatus) -> None:
        """
        Validate a transition without applying it.

        Raises:
            IllegalTransition: If the order can't move to target
        """
        current = OrderStatus(order.status)
        if current == target:
            return
        if target not in _VALID_TRANSITIONS[current]:
            raise IllegalTransition(current.value, target.value)
        if target == OrderStatus.REFUNDED and not order.is_paid:
            raise IllegalTransition(current.value, target.value, "order is not paid")

    def apply(
        self,
        db: Session,
        order: Order,
        target: OrderStatus,
        changes: Optional[Dict[str, Any]] = None,
        reason: Optional[str] = None
    ) -> bool:
        """
        Move an order to a new status inside the caller's transaction.

        The status is switched with a compare-and-set UPDATE on the current
        status, so two concurrent requests can't both apply the same
        transition (and both release inventory).

        Args:
            db: Database session (caller commits)
            order: Order to transition
            target: Target status
            changes: Extra column values written with the status change
            reason: Note recorded on refunds and cancellations

        Returns:
            True if applied, False if the order already had the target status

        Raises:
            IllegalTransition: If the transition isn't allowed
        """
        target = OrderStatus(target)
        current = OrderStatus(order.status)
        self.check(order, target)
        if current == target:
            logger.info("Order already in target status", extra={
                "order_id": order.id,
                "status": current.value
            })
            return False

        now = datetime.utcnow()
        values = {Order.status: target.value, Order.updated_at: now}
        if target in _TIMESTAMP_FIELDS:
            values[_TIMESTAMP_FIELDS[target]] = now
        if reason:
            values[Order.notes] = reason
        for field, value in (changes or {}).items():
            values[getattr(Order, field)] = value

        rows = db.query(Order).filter(
            Order.id == order.id,
            Order.status == current.value
        ).update(values, synchronize_session="fetch")

        if rows == 0:
            # Lost a race with a concurrent transition
            db.refresh(order)
            if OrderStatus(order.status) == target:
                return False
            raise IllegalTransition(order.status, target.value, "status changed concurrently")

        if target == OrderStatus.CANCELLED:
            self.ledger.release_items(db, order.items)

        order_transitions_counter.add(1, {"from": current.value, "to": target.value})
        logger.info("Order status changed", extra={
            "order_id": order.id,
            "from": current.value,
            "to": target.value
        })
        return True
