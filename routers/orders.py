"""Orders API router."""
from typing import Optional
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from database import get_db
from schemas import (
    CheckoutRequest,
    CheckoutResponse,
    OrderResponse,
    OrdersListResponse,
    ReasonRequest,
    StatusUpdateRequest
)
from auth import get_current_account, require_admin
from dependencies import get_order_service
from models import Account

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("/checkout", response_model=CheckoutResponse, status_code=201)
async def checkout(
    request: CheckoutRequest,
    db: Session = Depends(get_db),
    account: Account = Depends(get_current_account),
    order_service = Depends(get_order_service)
):
    """Turn the cart into an order and start payment - requires authentication."""
    return await order_service.checkout(
        db=db,
        account_id=account.id,
        fulfillment=request.fulfillment.model_dump(),
        payment_method=request.payment_method
    )


@router.get("", response_model=OrdersListResponse)
async def get_orders(
    db: Session = Depends(get_db),
    account: Account = Depends(get_current_account),
    order_service = Depends(get_order_service)
):
    """Get the account's orders - requires authentication."""
    return {"orders": order_service.list_orders(db, account.id)}


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: int,
    db: Session = Depends(get_db),
    account: Account = Depends(get_current_account),
    order_service = Depends(get_order_service)
):
    """Get one order; owners and admins only."""
    return order_service.get_order(db, account, order_id)


@router.post("/{order_id}/cancel", response_model=OrderResponse)
async def cancel_order(
    order_id: int,
    request: Optional[ReasonRequest] = None,
    db: Session = Depends(get_db),
    account: Account = Depends(get_current_account),
    order_service = Depends(get_order_service)
):
    """Cancel a pending or processing order and release its stock."""
    reason = request.reason if request else None
    return order_service.cancel_order(db, account, order_id, reason)


@router.post("/{order_id}/refund", response_model=OrderResponse)
async def refund_order(
    order_id: int,
    request: Optional[ReasonRequest] = None,
    db: Session = Depends(get_db),
    account: Account = Depends(get_current_account),
    order_service = Depends(get_order_service)
):
    """Refund a paid order that has shipped or been delivered."""
    reason = request.reason if request else None
    return await order_service.refund_order(db, account, order_id, reason)


@router.patch("/{order_id}/status", response_model=OrderResponse)
async def update_order_status(
    order_id: int,
    request: StatusUpdateRequest,
    db: Session = Depends(get_db),
    admin: Account = Depends(require_admin),
    order_service = Depends(get_order_service)
):
    """Move an order to another status - admin only."""
    return await order_service.update_status(db, admin, order_id, request.status, request.reason)
