"""Order management service."""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from sqlalchemy.orm import Session
import httpx
from opentelemetry import trace

from config import FULFILLMENT_METHODS, ONLINE_PAYMENT_METHODS, PAYMENT_METHODS, CURRENCY
from errors import (
    Forbidden,
    IllegalTransition,
    InsufficientStock,
    InvalidSelection,
    NotFound,
    PaymentProviderError,
    Unauthorized
)
from models import Account, Order, OrderItem, Product
from monitoring import checkout_counter, checkout_amount_histogram
from services.cart_service import CartService
from services.external_service import ExternalServiceClient
from services.inventory_ledger import InventoryLedger
from services.order_state_machine import OrderStateMachine, OrderStatus, RESERVING_STATES
from services.pricing import compute_totals

logger = logging.getLogger(__name__)


def order_to_dict(order: Order) -> Dict[str, Any]:
    """Serialize an order and its items."""
    return {
        "id": order.id,
        "account_id": order.account_id,
        "status": order.status,
        "fulfillment_method": order.fulfillment_method,
        "pickup_location": order.pickup_location,
        "delivery_address": order.delivery_address,
        "payment_method": order.payment_method,
        "payment_correlation_id": order.payment_correlation_id,
        "is_paid": order.is_paid,
        "paid_at": order.paid_at,
        "amount_captured": order.amount_captured,
        "discount_code": order.discount_code,
        "items_subtotal": order.items_subtotal,
        "tax": order.tax,
        "shipping": order.shipping,
        "discount_amount": order.discount_amount,
        "total": order.total,
        "currency": order.currency,
        "notes": order.notes,
        "created_at": order.created_at,
        "updated_at": order.updated_at,
        "shipped_at": order.shipped_at,
        "delivered_at": order.delivered_at,
        "cancelled_at": order.cancelled_at,
        "refunded_at": order.refunded_at,
        "items": [
            {
                "product_id": item.product_id,
                "name": item.name,
                "quantity": item.quantity,
                "unit_price": item.unit_price,
                "size": item.size,
                "color": item.color,
                "subtotal": item.unit_price * item.quantity
            }
            for item in order.items
        ]
    }


def _validate_fulfillment(fulfillment: Dict[str, Any]) -> None:
    method = fulfillment.get("method")
    if method not in FULFILLMENT_METHODS:
        raise InvalidSelection("Invalid fulfillment method", method=method)
    pickup_location = fulfillment.get("pickup_location")
    delivery_address = fulfillment.get("delivery_address")
    if method == "pickup" and (not pickup_location or delivery_address):
        raise InvalidSelection("Pickup requires a pickup location and no delivery address")
    if method == "delivery" and (not delivery_address or pickup_location):
        raise InvalidSelection("Delivery requires a delivery address and no pickup location")


class OrderService:
    """Service for managing orders."""

    def __init__(
        self,
        cart_service: CartService,
        ledger: InventoryLedger,
        state_machine: OrderStateMachine,
        external_service: ExternalServiceClient
    ):
        """
        Initialize order service.

        Args:
            cart_service: Cart service instance
            ledger: Inventory ledger
            state_machine: Order state machine
            external_service: External service client
        """
        self.cart_service = cart_service
        self.ledger = ledger
        self.state_machine = state_machine
        self.external_service = external_service
        self.tracer = trace.get_tracer(__name__)

    def _load_order(self, db: Session, order_id: int) -> Order:
        order = db.query(Order).filter(Order.id == order_id).first()
        if order is None:
            raise NotFound("Order", order_id)
        return order

    def _load_owned_order(self, db: Session, account: Account, order_id: int) -> Order:
        order = self._load_order(db, order_id)
        if order.account_id != account.id and not account.is_admin:
            raise Forbidden("Not allowed to access this order")
        return order

    def create_order(
        self,
        db: Session,
        account_id: str,
        fulfillment: Dict[str, Any],
        payment_method: str
    ) -> Order:
        """
        Turn the account's cart into a pending order.

        Creating the order, reserving stock for every line and clearing the
        cart happen in one transaction: either all of them are committed or
        none is.

        Args:
            db: Database session
            account_id: Account identifier
            fulfillment: ``method`` plus ``pickup_location`` or ``delivery_address``
            payment_method: Payment method

        Returns:
            The committed order

        Raises:
            Unauthorized: If the account is unknown or banned
            InvalidSelection: If the cart is empty or the selection is invalid
            NotFound: If a product in the cart no longer exists
            InsufficientStock: If a line can't be covered by current stock
        """
        span = trace.get_current_span()
        span.set_attribute("payment.method", payment_method)
        span.set_attribute("fulfillment.method", str(fulfillment.get("method")))

        account = db.query(Account).filter(Account.id == account_id).first()
        if account is None or account.banned:
            raise Unauthorized("Account is not allowed to place orders")
        if payment_method not in PAYMENT_METHODS:
            raise InvalidSelection("Invalid payment method", payment_method=payment_method)
        _validate_fulfillment(fulfillment)

        cart = self.cart_service.find_cart(db, account_id, for_update=True)
        if cart is None or not cart.lines:
            raise InvalidSelection("Cart is empty")

        # Snapshot the lines with live prices; nothing is mutated until every line passes
        items = []
        for line in cart.lines:
            with self.tracer.start_as_current_span("db.query.get_product") as db_span:
                db_span.set_attribute("db.operation", "SELECT")
                db_span.set_attribute("db.table", "products")
                db_span.set_attribute("product.id", line.product_id)

                product = db.query(Product).filter(Product.id == line.product_id).first()
                if product is None:
                    raise NotFound("Product", line.product_id)
                if product.stock < line.quantity:
                    raise InsufficientStock(product.id, line.quantity, product.stock)

            items.append(OrderItem(
                product_id=product.id,
                name=product.name,
                quantity=line.quantity,
                unit_price=product.price,
                size=line.size,
                color=line.color
            ))

        discount = self.cart_service.discount_for(cart)
        totals = compute_totals([(item.unit_price, item.quantity) for item in items], discount)

        try:
            with self.tracer.start_as_current_span("db.transaction.create_order") as db_span:
                db_span.set_attribute("db.operation", "INSERT")
                db_span.set_attribute("db.table", "orders")
                db_span.set_attribute("account.id", account_id)
                db_span.set_attribute("order.total", float(totals.total))

                order = Order(
                    account_id=account_id,
                    status=OrderStatus.PENDING.value,
                    fulfillment_method=fulfillment["method"],
                    pickup_location=fulfillment.get("pickup_location"),
                    delivery_address=fulfillment.get("delivery_address"),
                    payment_method=payment_method,
                    discount_code=discount.code if discount else None,
                    discount_type=discount.type if discount else None,
                    discount_value=discount.value if discount else None,
                    items_subtotal=totals.items_subtotal,
                    tax=totals.tax,
                    shipping=totals.shipping,
                    discount_amount=totals.discount_amount,
                    total=totals.total,
                    currency=CURRENCY,
                    items=items
                )
                db.add(order)
                db.flush()

                for item in items:
                    self.ledger.reserve(db, item.product_id, item.quantity)

                self.cart_service.claim_lines(db, cart, [line.id for line in cart.lines])

                db.commit()
                db_span.set_attribute("order.id", order.id)
        except Exception as e:
            db.rollback()
            checkout_counter.add(1, {"payment_method": payment_method, "status": "rejected"})
            logger.error("Failed to create order", extra={
                "account_id": account_id,
                "total": str(totals.total),
                "payment_method": payment_method,
                "error": str(e)
            })
            raise

        # Cart is empty now; drop the cached item count
        self.cart_service.refresh_cache(account_id, 0)

        logger.info("Order created", extra={
            "account_id": account_id,
            "order_id": order.id,
            "total": str(totals.total),
            "item_count": len(items)
        })
        return order

    async def checkout(
        self,
        db: Session,
        account_id: str,
        fulfillment: Dict[str, Any],
        payment_method: str
    ) -> Dict[str, Any]:
        """
        Create an order from the cart, then start payment and notify.

        Args:
            db: Database session
            account_id: Account identifier
            fulfillment: Fulfillment selection
            payment_method: Payment method

        Returns:
            Serialized order, with ``client_secret`` for online payments

        Raises:
            PaymentProviderError: If the payment intent can't be created; the
                order is cancelled and its stock released
        """
        order = self.create_order(db, account_id, fulfillment, payment_method)
        order_data = order_to_dict(order)
        order_id = order.id
        # End the read transaction before calling external services
        db.commit()

        client_secret = None
        if payment_method in ONLINE_PAYMENT_METHODS:
            try:
                intent = await self.external_service.create_payment_intent(
                    order_id=order_id,
                    amount=order_data["total"],
                    payment_method=payment_method,
                    currency=order_data["currency"]
                )
            except httpx.HTTPError as e:
                checkout_counter.add(1, {"payment_method": payment_method, "status": "payment_failed"})
                logger.error("Payment intent creation failed, cancelling order", extra={
                    "account_id": account_id,
                    "order_id": order_id,
                    "amount": str(order_data["total"]),
                    "payment_method": payment_method,
                    "error": str(e)
                })
                order = self._load_order(db, order_id)
                self.state_machine.apply(
                    db, order, OrderStatus.CANCELLED,
                    reason="Payment could not be initiated"
                )
                db.commit()
                raise PaymentProviderError("create_payment_intent", str(e))

            db.query(Order).filter(Order.id == order_id).update(
                {Order.payment_correlation_id: intent["id"], Order.updated_at: datetime.utcnow()},
                synchronize_session="fetch"
            )
            db.commit()
            order_data["payment_correlation_id"] = intent["id"]
            client_secret = intent.get("client_secret")

        # Fire and forget
        await self.external_service.send_order_confirmation(order_data)

        checkout_counter.add(1, {"payment_method": payment_method, "status": "completed"})
        checkout_amount_histogram.record(float(order_data["total"]), {"payment_method": payment_method})

        logger.info("Checkout completed", extra={
            "account_id": account_id,
            "order_id": order_id,
            "amount": str(order_data["total"]),
            "payment_method": payment_method,
            "payment_correlation_id": order_data["payment_correlation_id"],
            "item_count": len(order_data["items"])
        })

        return {**order_data, "client_secret": client_secret}

    def get_order(self, db: Session, account: Account, order_id: int) -> Dict[str, Any]:
        """
        Get one order visible to the account.

        Raises:
            NotFound: If the order doesn't exist
            Forbidden: If the account neither owns the order nor is an admin
        """
        return order_to_dict(self._load_owned_order(db, account, order_id))

    def list_orders(self, db: Session, account_id: str) -> List[Dict[str, Any]]:
        """
        Get all orders for an account, newest first.

        Args:
            db: Database session
            account_id: Account identifier

        Returns:
            List of orders
        """
        with self.tracer.start_as_current_span("db.query.get_account_orders") as db_span:
            db_span.set_attribute("db.operation", "SELECT")
            db_span.set_attribute("db.table", "orders")
            db_span.set_attribute("account.id", account_id)

            orders = db.query(Order).filter(
                Order.account_id == account_id
            ).order_by(Order.id.desc()).all()

            db_span.set_attribute("db.rows_returned", len(orders))

            return [order_to_dict(order) for order in orders]

    def list_all_orders(
        self,
        db: Session,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[Dict[str, Any]]:
        """Get orders of every account for the back office."""
        query = db.query(Order)
        if status:
            query = query.filter(Order.status == status)
        orders = query.order_by(Order.id.desc()).offset(offset).limit(limit).all()
        return [order_to_dict(order) for order in orders]

    def cancel_order(
        self,
        db: Session,
        account: Account,
        order_id: int,
        reason: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Cancel an order and release its stock.

        Raises:
            NotFound: If the order doesn't exist
            Forbidden: If the account neither owns the order nor is an admin
            IllegalTransition: If the order is past processing
        """
        order = self._load_owned_order(db, account, order_id)
        try:
            self.state_machine.apply(
                db, order, OrderStatus.CANCELLED,
                reason=reason or f"Cancelled by {account.id}"
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        return order_to_dict(order)

    async def refund_order(
        self,
        db: Session,
        account: Account,
        order_id: int,
        reason: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Refund a paid, shipped or delivered order.

        The provider refund is requested first; the order is only marked
        refunded once the provider accepted it.

        Raises:
            NotFound: If the order doesn't exist
            Forbidden: If the account neither owns the order nor is an admin
            IllegalTransition: If the order isn't refundable
            PaymentProviderError: If the provider refund fails
        """
        order = self._load_owned_order(db, account, order_id)
        self.state_machine.check(order, OrderStatus.REFUNDED)
        if order.status == OrderStatus.REFUNDED.value:
            return order_to_dict(order)

        correlation_id = order.payment_correlation_id
        amount = order.amount_captured if order.amount_captured is not None else order.total
        # End the read transaction before calling the provider
        db.commit()

        if correlation_id:
            try:
                await self.external_service.create_refund(order_id, correlation_id, amount)
            except httpx.HTTPError as e:
                logger.error("Payment provider refund failed", extra={
                    "order_id": order_id,
                    "payment_correlation_id": correlation_id,
                    "error": str(e)
                })
                raise PaymentProviderError("refund", str(e))

        order = self._load_order(db, order_id)
        try:
            self.state_machine.apply(
                db, order, OrderStatus.REFUNDED,
                reason=reason or f"Refunded by {account.id}"
            )
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error("Refund issued but order could not be marked refunded", extra={
                "order_id": order_id,
                "payment_correlation_id": correlation_id,
                "error": str(e)
            })
            raise

        logger.info("Order refunded", extra={
            "order_id": order_id,
            "amount": str(amount),
            "refunded_by": account.id
        })
        return order_to_dict(order)

    async def update_status(
        self,
        db: Session,
        account: Account,
        order_id: int,
        status: str,
        reason: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Move an order to another status (back office).

        Refunds go through the provider like ``refund_order``.

        Raises:
            NotFound: If the order doesn't exist
            InvalidSelection: If the status is unknown
            IllegalTransition: If the transition isn't allowed
        """
        try:
            target = OrderStatus(status)
        except ValueError:
            raise InvalidSelection("Invalid order status", status=status)

        if target == OrderStatus.REFUNDED:
            return await self.refund_order(db, account, order_id, reason)

        order = self._load_order(db, order_id)
        try:
            self.state_machine.apply(db, order, target, reason=reason)
            db.commit()
        except Exception:
            db.rollback()
            raise
        return order_to_dict(order)

    def delete_order(self, db: Session, order_id: int) -> None:
        """
        Delete an order, returning stock it still holds.

        Raises:
            NotFound: If the order doesn't exist
        """
        order = self._load_order(db, order_id)
        status = order.status
        try:
            # Claim the row at its current status so a concurrent cancel can't release twice
            rows = db.query(Order).filter(
                Order.id == order_id,
                Order.status == status
            ).update({Order.updated_at: datetime.utcnow()}, synchronize_session="fetch")
            if rows == 0:
                raise IllegalTransition(status, "deleted", "status changed concurrently")

            if OrderStatus(status) in RESERVING_STATES:
                self.ledger.release_items(db, order.items)

            db.delete(order)
            db.commit()
        except Exception:
            db.rollback()
            raise

        logger.info("Order deleted", extra={
            "order_id": order_id,
            "status": status,
            "stock_released": OrderStatus(status) in RESERVING_STATES
        })
