"""Cart API router."""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from database import get_db
from schemas import AddToCartRequest, ApplyDiscountRequest, CartResponse, UpdateCartLineRequest
from auth import get_current_account
from dependencies import get_cart_service
from models import Account

router = APIRouter(prefix="/cart", tags=["cart"])


@router.get("", response_model=CartResponse)
async def get_cart(
    db: Session = Depends(get_db),
    account: Account = Depends(get_current_account),
    cart_service = Depends(get_cart_service)
):
    """Get the account's cart - requires authentication."""
    return cart_service.get_cart(db, account.id)


@router.post("/items", response_model=CartResponse, status_code=201)
async def add_to_cart(
    request: AddToCartRequest,
    db: Session = Depends(get_db),
    account: Account = Depends(get_current_account),
    cart_service = Depends(get_cart_service)
):
    """Add a product to the cart, merging with an identical line."""
    return cart_service.upsert_line(
        db=db,
        account_id=account.id,
        product_id=request.product_id,
        quantity=request.quantity,
        size=request.size,
        color=request.color
    )


@router.patch("/items/{line_id}", response_model=CartResponse)
async def update_cart_line(
    line_id: int,
    request: UpdateCartLineRequest,
    db: Session = Depends(get_db),
    account: Account = Depends(get_current_account),
    cart_service = Depends(get_cart_service)
):
    """Change the quantity of a cart line."""
    return cart_service.update_line_qty(db, account.id, line_id, request.quantity)


@router.delete("/items/{line_id}", response_model=CartResponse)
async def remove_cart_line(
    line_id: int,
    db: Session = Depends(get_db),
    account: Account = Depends(get_current_account),
    cart_service = Depends(get_cart_service)
):
    """Remove a line from the cart."""
    return cart_service.remove_line(db, account.id, line_id)


@router.delete("", response_model=CartResponse)
async def clear_cart(
    db: Session = Depends(get_db),
    account: Account = Depends(get_current_account),
    cart_service = Depends(get_cart_service)
):
    """Empty the cart."""
    cart_service.clear(db, account.id)
    return cart_service.get_cart(db, account.id)


@router.post("/discount", response_model=CartResponse)
async def apply_discount(
    request: ApplyDiscountRequest,
    db: Session = Depends(get_db),
    account: Account = Depends(get_current_account),
    cart_service = Depends(get_cart_service)
):
    """Attach a discount code to the cart."""
    return cart_service.apply_discount(db, account.id, request.code)


@router.delete("/discount", response_model=CartResponse)
async def remove_discount(
    db: Session = Depends(get_db),
    account: Account = Depends(get_current_account),
    cart_service = Depends(get_cart_service)
):
    """Detach the cart's discount code."""
    return cart_service.remove_discount(db, account.id)
