"""Pydantic schemas for request/response validation.

Money fields are Decimal and serialize as decimal strings ("46.00").
"""
from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import Any, Dict, List, Literal, Optional

from config import MAX_LINE_QUANTITY


class ProductResponse(BaseModel):
    """Schema for product response."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    sku: Optional[str] = None
    name: str
    category: Optional[str] = None
    price: Decimal
    stock: int
    stock_status: str
    sizes: List[str] = []
    colors: List[str] = []


class AddToCartRequest(BaseModel):
    """Schema for add to cart request."""
    product_id: int
    quantity: int = Field(1, ge=1, le=MAX_LINE_QUANTITY)
    size: Optional[str] = None
    color: Optional[str] = None


class UpdateCartLineRequest(BaseModel):
    """Schema for changing a cart line quantity."""
    quantity: int = Field(..., ge=1, le=MAX_LINE_QUANTITY)


class ApplyDiscountRequest(BaseModel):
    """Schema for attaching a discount code."""
    code: str = Field(..., min_length=1)


class CartItemResponse(BaseModel):
    """Schema for cart item in response."""
    id: int
    product_id: int
    product_name: str
    price: Decimal
    quantity: int
    size: Optional[str] = None
    color: Optional[str] = None
    subtotal: Decimal


class CartResponse(BaseModel):
    """Schema for cart response."""
    account_id: str
    items: List[CartItemResponse]
    item_count: int
    discount_code: Optional[str] = None
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    discount: Decimal
    total: Decimal


class DeliveryAddress(BaseModel):
    """Schema for a delivery address."""
    name: str
    street: str
    city: str
    postal_code: str
    country: str = Field(..., min_length=2, max_length=2)
    phone: Optional[str] = None


class FulfillmentSelection(BaseModel):
    """Pickup at a location, or delivery to an address; never both."""
    method: Literal["pickup", "delivery"]
    pickup_location: Optional[str] = None
    delivery_address: Optional[DeliveryAddress] = None

    @model_validator(mode="after")
    def check_consistency(self):
        if self.method == "pickup" and (not self.pickup_location or self.delivery_address):
            raise ValueError("pickup requires pickup_location and no delivery_address")
        if self.method == "delivery" and (not self.delivery_address or self.pickup_location):
            raise ValueError("delivery requires delivery_address and no pickup_location")
        return self


class CheckoutRequest(BaseModel):
    """Schema for checkout request."""
    payment_method: Literal["credit_card", "paypal", "bank_transfer", "cash_on_delivery"]
    fulfillment: FulfillmentSelection


class OrderItemResponse(BaseModel):
    """Schema for order item in response."""
    product_id: int
    name: str
    quantity: int
    unit_price: Decimal
    size: Optional[str] = None
    color: Optional[str] = None
    subtotal: Decimal


class OrderResponse(BaseModel):
    """Schema for order response."""
    id: int
    account_id: str
    status: str
    fulfillment_method: str
    pickup_location: Optional[str] = None
    delivery_address: Optional[Dict[str, Any]] = None
    payment_method: str
    payment_correlation_id: Optional[str] = None
    is_paid: bool
    paid_at: Optional[datetime] = None
    amount_captured: Optional[Decimal] = None
    discount_code: Optional[str] = None
    items_subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    discount_amount: Decimal
    total: Decimal
    currency: str
    notes: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    items: List[OrderItemResponse]


class CheckoutResponse(OrderResponse):
    """Schema for checkout response."""
    client_secret: Optional[str] = None


class OrdersListResponse(BaseModel):
    """Schema for orders list response."""
    orders: List[OrderResponse]


class StatusUpdateRequest(BaseModel):
    """Schema for a back-office status change."""
    status: Literal["pending", "processing", "shipped", "delivered", "cancelled", "refunded"]
    reason: Optional[str] = None


class StockUpdateRequest(BaseModel):
    """Schema for a back-office stock correction."""
    operation: Literal["increment", "decrement", "set"]
    quantity: int = Field(..., ge=0)


class ReasonRequest(BaseModel):
    """Schema for cancel and refund requests."""
    reason: Optional[str] = Field(None, max_length=500)


class PaymentWebhookEvent(BaseModel):
    """Schema for a payment provider event."""
    id: Optional[str] = None
    type: Literal["succeeded", "failed"]
    correlation_id: str = Field(..., min_length=1)
    amount: Optional[Decimal] = None
    order_id: Optional[int] = None


class PaymentWebhookResponse(BaseModel):
    """Schema for webhook acknowledgement."""
    received: bool = True
    outcome: str
    order_id: Optional[int] = None


class PaymentEventResponse(BaseModel):
    """Schema for a recorded payment event."""
    id: int
    event_key: str
    correlation_id: str
    event_type: str
    amount: Optional[Decimal] = None
    order_id: Optional[int] = None
    outcome: str
    received_at: datetime


class PaymentEventsListResponse(BaseModel):
    """Schema for payment events list response."""
    events: List[PaymentEventResponse]
