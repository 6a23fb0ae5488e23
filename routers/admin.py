"""Back-office API router."""
import logging
from typing import Literal, Optional
from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session
from opentelemetry import trace

from database import get_db
from models import Account, Product
from schemas import OrdersListResponse, PaymentEventsListResponse, ProductResponse, StockUpdateRequest
from auth import require_admin
from dependencies import get_ledger, get_order_service, get_reconciler
from services.inventory_ledger import InventoryLedger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


@router.get("/orders", response_model=OrdersListResponse)
async def list_orders(
    status: Optional[str] = Query(None, description="Filter by order status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    order_service = Depends(get_order_service)
):
    """List orders of every account."""
    return {"orders": order_service.list_all_orders(db, status, limit, offset)}


@router.delete("/orders/{order_id}", status_code=204)
async def delete_order(
    order_id: int,
    db: Session = Depends(get_db),
    order_service = Depends(get_order_service)
):
    """Delete an order; stock still reserved by it is returned."""
    order_service.delete_order(db, order_id)
    return Response(status_code=204)


@router.get("/payment-events", response_model=PaymentEventsListResponse)
async def list_payment_events(
    outcome: Optional[Literal["applied", "duplicate", "ignored", "orphan", "captured_on_cancelled"]] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    reconciler = Depends(get_reconciler)
):
    """
    List recorded payment events.

    ``outcome=orphan`` and ``outcome=captured_on_cancelled`` list the events
    that need follow-up.
    """
    return {"events": reconciler.list_events(db, outcome, limit)}


@router.patch("/products/{product_id}/stock", response_model=ProductResponse)
async def update_stock(
    product_id: int,
    request: StockUpdateRequest,
    db: Session = Depends(get_db),
    admin: Account = Depends(require_admin),
    ledger: InventoryLedger = Depends(get_ledger)
):
    """Increment, decrement or overwrite a product's stock."""
    span = trace.get_current_span()
    span.set_attribute("product.id", product_id)
    span.set_attribute("stock.operation", request.operation)

    stock = ledger.adjust(db, product_id, request.operation, request.quantity)
    db.commit()

    logger.info("Product stock updated by admin", extra={
        "admin_id": admin.id,
        "product_id": product_id,
        "operation": request.operation,
        "quantity": request.quantity,
        "stock": stock
    })
    return db.query(Product).filter(Product.id == product_id).one()
