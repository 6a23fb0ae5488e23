"""Payment provider webhook reconciliation."""
import hashlib
import hmac
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from opentelemetry import trace

from config import PAYMENT_WEBHOOK_SECRET
from errors import IllegalTransition, OrphanPayment
from models import Order, PaymentEvent
from monitoring import captured_on_cancelled_counter, orphan_payments_counter, payment_webhooks_counter
from services.order_state_machine import OrderStateMachine, OrderStatus

logger = logging.getLogger(__name__)

APPLIED = "applied"
DUPLICATE = "duplicate"
IGNORED = "ignored"
ORPHAN = "orphan"
CAPTURED_ON_CANCELLED = "captured_on_cancelled"


def sign_payload(body: bytes, secret: str = PAYMENT_WEBHOOK_SECRET) -> str:
    """Hex HMAC-SHA256 of a raw webhook body."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: Optional[str], secret: str = PAYMENT_WEBHOOK_SECRET) -> bool:
    """
    Check the provider signature of a webhook body.

    Args:
        body: Raw request body
        signature: Value of the signature header
        secret: Shared webhook secret

    Returns:
        True if the signature matches
    """
    if not signature:
        return False
    return hmac.compare_digest(sign_payload(body, secret), signature)


def event_key(event: Dict[str, Any]) -> str:
    """Idempotency key of an event: provider event id, or correlation id and type."""
    return event.get("id") or f"{event['correlation_id']}:{event['type']}"


class PaymentReconciler:
    """Matches payment provider events to orders and applies them once."""

    def __init__(self, state_machine: OrderStateMachine):
        self.state_machine = state_machine
        self.tracer = trace.get_tracer(__name__)

    def _find_order(self, db: Session, event: Dict[str, Any]) -> Optional[Order]:
        correlation_id = event["correlation_id"]
        order = db.query(Order).filter(Order.payment_correlation_id == correlation_id).first()
        if order is not None or event.get("order_id") is None:
            return order

        # The webhook can arrive before checkout stored the intent id
        rows = db.query(Order).filter(
            Order.id == event["order_id"],
            Order.payment_correlation_id.is_(None)
        ).update({Order.payment_correlation_id: correlation_id}, synchronize_session="fetch")
        if rows == 0:
            return None

        logger.info("Order adopted payment correlation id from event metadata", extra={
            "order_id": event["order_id"],
            "correlation_id": correlation_id
        })
        return db.query(Order).filter(Order.id == event["order_id"]).first()

    def _apply(self, db: Session, order: Order, event: Dict[str, Any]) -> str:
        if OrderStatus(order.status) == OrderStatus.PENDING:
            try:
                return APPLIED if self._transition(db, order, event) else IGNORED
            except IllegalTransition as e:
                # Lost a race with another event or a cancellation
                logger.info("Payment event hit a concurrent status change", extra={
                    "order_id": order.id,
                    "event_type": event["type"],
                    "error": str(e)
                })
                db.refresh(order)

        if event["type"] == "succeeded" and not order.is_paid:
            return self._record_capture(db, order, event)

        logger.info("Payment event ignored for order past pending", extra={
            "order_id": order.id,
            "status": order.status,
            "event_type": event["type"]
        })
        return IGNORED

    def _captured_amount(self, order: Order, event: Dict[str, Any]) -> Decimal:
        amount = Decimal(str(event["amount"])) if event.get("amount") is not None else order.total
        if amount != order.total:
            logger.warning("Captured amount differs from order total", extra={
                "order_id": order.id,
                "amount": str(amount),
                "total": str(order.total)
            })
        return amount

    def _record_capture(self, db: Session, order: Order, event: Dict[str, Any]) -> str:
        """Record a capture on an order that already left pending without being paid."""
        rows = db.query(Order).filter(
            Order.id == order.id,
            Order.is_paid.is_(False)
        ).update({
            Order.is_paid: True,
            Order.paid_at: datetime.utcnow(),
            Order.amount_captured: self._captured_amount(order, event),
            Order.updated_at: datetime.utcnow()
        }, synchronize_session="fetch")
        if rows == 0:
            return IGNORED

        if OrderStatus(order.status) == OrderStatus.CANCELLED:
            captured_on_cancelled_counter.add(1, {"payment_method": order.payment_method})
            logger.error("Payment captured for a cancelled order", extra={
                "order_id": order.id,
                "correlation_id": event["correlation_id"],
                "amount": str(order.amount_captured)
            })
            return CAPTURED_ON_CANCELLED

        logger.info("Payment recorded for order past pending", extra={
            "order_id": order.id,
            "status": order.status
        })
        return APPLIED

    def _transition(self, db: Session, order: Order, event: Dict[str, Any]) -> bool:
        if event["type"] == "succeeded":
            applied = self.state_machine.apply(db, order, OrderStatus.PROCESSING, changes={
                "is_paid": True,
                "paid_at": datetime.utcnow(),
                "amount_captured": self._captured_amount(order, event)
            })
        else:
            applied = self.state_machine.apply(
                db, order, OrderStatus.CANCELLED,
                reason="Payment failed"
            )
        return applied

    def handle_event(self, db: Session, event: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply a verified payment event at most once.

        The event is recorded in the payment event ledger in the same
        transaction as the order transition, so replays and concurrent
        duplicates are no-ops.

        Args:
            db: Database session
            event: ``type`` (succeeded | failed), ``correlation_id``, ``amount``,
                optional provider ``id`` and ``order_id``

        Returns:
            ``outcome`` and ``order_id``

        Raises:
            OrphanPayment: If no order matches the event (recorded for follow-up)
        """
        key = event_key(event)
        span = trace.get_current_span()
        span.set_attribute("payment.event_type", event["type"])
        span.set_attribute("payment.correlation_id", event["correlation_id"])

        if db.query(PaymentEvent.id).filter(PaymentEvent.event_key == key).first():
            payment_webhooks_counter.add(1, {"type": event["type"], "outcome": DUPLICATE})
            logger.info("Duplicate payment event", extra={"event_key": key})
            return {"outcome": DUPLICATE, "order_id": None}

        try:
            with self.tracer.start_as_current_span("db.transaction.reconcile_payment") as db_span:
                db_span.set_attribute("db.operation", "UPDATE")
                db_span.set_attribute("db.table", "orders")

                order = self._find_order(db, event)
                outcome = ORPHAN if order is None else self._apply(db, order, event)
                order_id = order.id if order is not None else None

                db.add(PaymentEvent(
                    event_key=key,
                    correlation_id=event["correlation_id"],
                    event_type=event["type"],
                    amount=event.get("amount"),
                    order_id=order_id,
                    outcome=outcome
                ))
                db.commit()
                db_span.set_attribute("payment.outcome", outcome)
        except IntegrityError:
            # A concurrent delivery of the same event committed first
            db.rollback()
            payment_webhooks_counter.add(1, {"type": event["type"], "outcome": DUPLICATE})
            logger.info("Duplicate payment event", extra={"event_key": key})
            return {"outcome": DUPLICATE, "order_id": None}
        except Exception as e:
            db.rollback()
            logger.error("Failed to reconcile payment event", extra={
                "event_key": key,
                "correlation_id": event["correlation_id"],
                "error": str(e)
            })
            raise

        payment_webhooks_counter.add(1, {"type": event["type"], "outcome": outcome})

        if outcome == ORPHAN:
            orphan_payments_counter.add(1, {"type": event["type"]})
            logger.error("Payment event does not match any order", extra={
                "event_key": key,
                "correlation_id": event["correlation_id"],
                "event_type": event["type"],
                "amount": str(event.get("amount"))
            })
            raise OrphanPayment(event["correlation_id"], event["type"])

        logger.info("Payment event reconciled", extra={
            "event_key": key,
            "order_id": order_id,
            "event_type": event["type"],
            "outcome": outcome
        })
        return {"outcome": outcome, "order_id": order_id}

    def list_events(self, db: Session, outcome: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        """List recorded payment events, newest first."""
        query = db.query(PaymentEvent)
        if outcome:
            query = query.filter(PaymentEvent.outcome == outcome)
        events = query.order_by(PaymentEvent.id.desc()).limit(limit).all()
        return [
            {
                "id": e.id,
                "event_key": e.event_key,
                "correlation_id": e.correlation_id,
                "event_type": e.event_type,
                "amount": e.amount,
                "order_id": e.order_id,
                "outcome": e.outcome,
                "received_at": e.received_at
            }
            for e in events
        ]
