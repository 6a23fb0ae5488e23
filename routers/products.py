"""Products API router."""
from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.orm import Session
from typing import List, Optional
from opentelemetry import trace

from database import get_db
from errors import NotFound
from models import Product
from schemas import ProductResponse

router = APIRouter(prefix="/products", tags=["products"])


@router.get("", response_model=List[ProductResponse])
async def get_products(
    category: Optional[str] = Query(None, description="Filter by category"),
    in_stock: bool = Query(False, description="Only products with stock left"),
    db: Session = Depends(get_db)
):
    """
    Get the product catalog.

    Each product carries its ``stock_status``: ``in-stock``, ``low-stock``
    (at or below its low-stock threshold) or ``out-of-stock``.
    """
    query = db.query(Product)
    if category:
        query = query.filter(Product.category == category)
    if in_stock:
        query = query.filter(Product.stock > 0)
    products = query.order_by(Product.id).all()

    span = trace.get_current_span()
    span.set_attribute("product.count", len(products))
    span.set_attribute("endpoint.type", "product_catalog")

    return products


@router.get("/{product_id}", response_model=ProductResponse)
async def get_product(
    product_id: int = Path(..., description="Product ID"),
    db: Session = Depends(get_db)
):
    """Get product details."""
    product = db.query(Product).filter(Product.id == product_id).first()
    if not product:
        raise NotFound("Product", product_id)

    span = trace.get_current_span()
    span.set_attribute("product.id", product_id)

    return product
