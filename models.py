"""Database models for the storefront service."""
from datetime import datetime
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

Money = Numeric(10, 2)


class Account(Base):
    """Account model (directory entry used for authorization)."""
    __tablename__ = "accounts"

    id = Column(String, primary_key=True)
    email = Column(String, unique=True, index=True)
    role = Column(String, default="user", nullable=False)
    banned = Column(Boolean, default=False, nullable=False)
    api_token = Column(String, unique=True, index=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class Product(Base):
    """Product model. Stock is only changed through the inventory ledger."""
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    sku = Column(String, unique=True)
    name = Column(String, index=True, nullable=False)
    category = Column(String)
    price = Column(Money, nullable=False)
    stock = Column(Integer, nullable=False, default=0)
    low_stock_threshold = Column(Integer, nullable=False, default=5)
    sizes = Column(JSON, nullable=False, default=list)
    colors = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, default=datetime.utcnow)

    @property
    def stock_status(self) -> str:
        if self.stock == 0:
            return "out-of-stock"
        if self.stock <= self.low_stock_threshold:
            return "low-stock"
        return "in-stock"


class Cart(Base):
    """Cart model, one per account."""
    __tablename__ = "carts"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(String, ForeignKey("accounts.id"), unique=True, nullable=False)
    discount_code = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    lines = relationship(
        "CartLine",
        back_populates="cart",
        cascade="all, delete-orphan",
        order_by="CartLine.id",
    )


class CartLine(Base):
    """Cart line model."""
    __tablename__ = "cart_lines"
    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_cart_lines_quantity_positive"),
    )

    id = Column(Integer, primary_key=True, index=True)
    cart_id = Column(Integer, ForeignKey("carts.id", ondelete="CASCADE"), index=True, nullable=False)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    size = Column(String, nullable=True)
    color = Column(String, nullable=True)
    unit_price = Column(Money, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    cart = relationship("Cart", back_populates="lines")
    product = relationship("Product")


class Order(Base):
    """Order model. Items and money fields are fixed at creation."""
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint("total >= 0", name="ck_orders_total_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(String, ForeignKey("accounts.id"), index=True, nullable=False)
    status = Column(String, index=True, nullable=False, default="pending")

    fulfillment_method = Column(String, nullable=False)
    pickup_location = Column(String, nullable=True)
    delivery_address = Column(JSON, nullable=True)

    payment_method = Column(String, nullable=False)
    payment_correlation_id = Column(String, unique=True, index=True, nullable=True)
    is_paid = Column(Boolean, default=False, nullable=False)
    paid_at = Column(DateTime, nullable=True)
    amount_captured = Column(Money, nullable=True)

    discount_code = Column(String, nullable=True)
    discount_type = Column(String, nullable=True)
    discount_value = Column(Numeric(10, 2), nullable=True)

    items_subtotal = Column(Money, nullable=False)
    tax = Column(Money, nullable=False)
    shipping = Column(Money, nullable=False)
    discount_amount = Column(Money, nullable=False, default=0)
    total = Column(Money, nullable=False)
    currency = Column(String, nullable=False)

    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    shipped_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )


class OrderItem(Base):
    """Order item model: a value copy of the cart line at checkout time."""
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), index=True, nullable=False)
    product_id = Column(Integer, nullable=False)
    name = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Money, nullable=False)
    size = Column(String, nullable=True)
    color = Column(String, nullable=True)

    order = relationship("Order", back_populates="items")


class PaymentEvent(Base):
    """Payment provider event ledger (idempotency and orphan follow-up)."""
    __tablename__ = "payment_events"

    id = Column(Integer, primary_key=True, index=True)
    event_key = Column(String, unique=True, nullable=False)
    correlation_id = Column(String, index=True, nullable=False)
    event_type = Column(String, nullable=False)
    amount = Column(Money, nullable=True)
    order_id = Column(Integer, nullable=True)
    outcome = Column(String, index=True, nullable=False)
    received_at = Column(DateTime, default=datetime.utcnow)
