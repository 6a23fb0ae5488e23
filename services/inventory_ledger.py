"""Inventory ledger: atomic stock reservation and release."""
import logging
from typing import Iterable
from sqlalchemy.orm import Session
from opentelemetry import trace

from errors import InsufficientStock, InvalidSelection, NotFound
from models import OrderItem, Product
from monitoring import (
    inventory_reservation_failures_counter,
    inventory_releases_counter,
    low_stock_counter
)

logger = logging.getLogger(__name__)


class InventoryLedger:
    """
    Per-product available quantity.

    Every mutation is a single conditional UPDATE executed by the database,
    so concurrent reservations across processes can't oversell. The ledger
    joins the caller's transaction and never commits on its own.
    """

    def __init__(self):
        self.tracer = trace.get_tracer(__name__)

    def available(self, db: Session, product_id: int) -> int:
        """
        Get current available quantity for a product.

        Raises:
            NotFound: If the product doesn't exist
        """
        stock = db.query(Product.stock).filter(Product.id == product_id).scalar()
        if stock is None:
            raise NotFound("Product", product_id)
        return stock

    def reserve(self, db: Session, product_id: int, quantity: int) -> int:
        """
        Atomically decrement stock if enough is available.

        Args:
            db: Database session (transaction owned by the caller)
            product_id: Product identifier
            quantity: Units to reserve

        Returns:
            Stock remaining after the reservation

        Raises:
            InsufficientStock: If available stock is below quantity
            NotFound: If the product doesn't exist
        """
        with self.tracer.start_as_current_span("db.query.reserve_stock") as db_span:
            db_span.set_attribute("db.operation", "UPDATE")
            db_span.set_attribute("db.table", "products")
            db_span.set_attribute("product.id", product_id)
            db_span.set_attribute("quantity", quantity)

            rows = db.query(Product).filter(
                Product.id == product_id,
                Product.stock >= quantity
            ).update(
                {Product.stock: Product.stock - quantity},
                synchronize_session="fetch"
            )
            db_span.set_attribute("db.rows_affected", rows)

            if rows == 0:
                available = self.available(db, product_id)
                inventory_reservation_failures_counter.add(1, {"product_id": str(product_id)})
                logger.warning("Inventory reservation rejected", extra={
                    "product_id": product_id,
                    "requested": quantity,
                    "available": available
                })
                raise InsufficientStock(product_id, quantity, available)

            product = db.query(Product.stock, Product.low_stock_threshold).filter(
                Product.id == product_id
            ).one()
            db_span.set_attribute("product.stock.after", product.stock)

        if product.stock <= product.low_stock_threshold:
            low_stock_counter.add(1, {"product_id": str(product_id)})
            logger.warning("Product stock is low", extra={
                "product_id": product_id,
                "stock": product.stock,
                "threshold": product.low_stock_threshold
            })

        return product.stock

    def release(self, db: Session, product_id: int, quantity: int) -> int:
        """
        Atomically return units to stock.

        Returns:
            Stock after the release

        Raises:
            NotFound: If the product doesn't exist
        """
        with self.tracer.start_as_current_span("db.query.release_stock") as db_span:
            db_span.set_attribute("db.operation", "UPDATE")
            db_span.set_attribute("db.table", "products")
            db_span.set_attribute("product.id", product_id)
            db_span.set_attribute("quantity", quantity)

            rows = db.query(Product).filter(Product.id == product_id).update(
                {Product.stock: Product.stock + quantity},
                synchronize_session="fetch"
            )
            if rows == 0:
                raise NotFound("Product", product_id)

        inventory_releases_counter.add(quantity, {"product_id": str(product_id)})
        return self.available(db, product_id)

    def release_items(self, db: Session, items: Iterable[OrderItem]) -> None:
        """Release the reserved quantity of every order line."""
        for item in items:
            self.release(db, item.product_id, item.quantity)
            logger.info("Released inventory", extra={
                "order_id": item.order_id,
                "product_id": item.product_id,
                "quantity": item.quantity
            })

    def set_stock(self, db: Session, product_id: int, quantity: int) -> int:
        """
        Overwrite a product's stock with a single UPDATE.

        Raises:
            InvalidSelection: If quantity is negative
            NotFound: If the product doesn't exist
        """
        if quantity < 0:
            raise InvalidSelection("Stock can't be negative", quantity=quantity)

        with self.tracer.start_as_current_span("db.query.set_stock") as db_span:
            db_span.set_attribute("db.operation", "UPDATE")
            db_span.set_attribute("db.table", "products")
            db_span.set_attribute("product.id", product_id)
            db_span.set_attribute("quantity", quantity)

            rows = db.query(Product).filter(Product.id == product_id).update(
                {Product.stock: quantity},
                synchronize_session="fetch"
            )
            if rows == 0:
                raise NotFound("Product", product_id)
        return quantity

    def adjust(self, db: Session, product_id: int, operation: str, quantity: int) -> int:
        """
        Back-office stock correction: ``increment``, ``decrement`` or ``set``.

        Decrements go through the same conditional update as reservations,
        so stock never drops below zero.

        Returns:
            Stock after the adjustment

        Raises:
            InvalidSelection: If the operation is unknown or quantity is negative
            InsufficientStock: If a decrement exceeds current stock
            NotFound: If the product doesn't exist
        """
        if quantity < 0:
            raise InvalidSelection("Quantity must be zero or more", quantity=quantity)
        if operation == "increment":
            stock = self.release(db, product_id, quantity)
        elif operation == "decrement":
            stock = self.reserve(db, product_id, quantity)
        elif operation == "set":
            stock = self.set_stock(db, product_id, quantity)
        else:
            raise InvalidSelection("Invalid stock operation", operation=operation)

        logger.info("Stock adjusted", extra={
            "product_id": product_id,
            "operation": operation,
            "quantity": quantity,
            "stock": stock
        })
        return stock
