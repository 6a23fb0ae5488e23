"""Cart management service."""
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional
from sqlalchemy.orm import Session
import redis
from opentelemetry import trace

from config import DISCOUNT_CODES, MAX_LINE_QUANTITY
from errors import CartChanged, InvalidSelection, NotFound
from models import Cart, CartLine, Product
from monitoring import cart_mutations_counter
from services.inventory_ledger import InventoryLedger
from services.pricing import ZERO, Discount, OrderTotals, compute_totals

logger = logging.getLogger(__name__)

CART_CACHE_TTL = 3600
EMPTY_TOTALS = OrderTotals(ZERO, ZERO, ZERO, ZERO, ZERO)


def lookup_discount(code: str) -> Discount:
    """
    Resolve a discount code against the configured codes.

    Raises:
        InvalidSelection: If the code is unknown or misconfigured
    """
    entry = DISCOUNT_CODES.get(code)
    if entry is None:
        raise InvalidSelection("Invalid discount code", code=code)
    return Discount(code=code, type=entry["type"], value=Decimal(str(entry["value"])))


class CartService:
    """Service for managing shopping carts."""

    def __init__(self, redis_client: redis.Redis, ledger: InventoryLedger):
        """
        Initialize cart service.

        Args:
            redis_client: Redis client for the cart item-count cache
            ledger: Inventory ledger used to check availability
        """
        self.redis_client = redis_client
        self.ledger = ledger
        self.tracer = trace.get_tracer(__name__)

    def find_cart(self, db: Session, account_id: str, for_update: bool = False) -> Optional[Cart]:
        query = db.query(Cart).filter(Cart.account_id == account_id)
        if for_update:
            # Serializes checkouts of the same cart
            query = query.with_for_update()
        return query.first()

    def _require_cart(self, db: Session, account_id: str) -> Cart:
        cart = self.find_cart(db, account_id)
        if cart is None:
            raise NotFound("Cart")
        return cart

    def _require_line(self, cart: Cart, line_id: int) -> CartLine:
        for line in cart.lines:
            if line.id == line_id:
                return line
        raise NotFound("Cart line", line_id)

    def _get_product(self, db: Session, product_id: int) -> Product:
        product = db.query(Product).filter(Product.id == product_id).first()
        if product is None:
            raise NotFound("Product", product_id)
        return product

    def _validate_variant(self, product: Product, size: Optional[str], color: Optional[str]) -> None:
        for attribute, value, options in (("size", size, product.sizes or []),
                                          ("color", color, product.colors or [])):
            if options and value not in options:
                raise InvalidSelection(
                    f"Invalid {attribute} for {product.name}. Valid options: {', '.join(options)}",
                    product_id=product.id,
                    **{attribute: value}
                )
            if not options and value is not None:
                raise InvalidSelection(
                    f"{product.name} has no {attribute} options",
                    product_id=product.id,
                    **{attribute: value}
                )

    def _validate_quantity(self, db: Session, product: Product, quantity: int) -> None:
        if quantity < 1:
            raise InvalidSelection("Quantity must be at least 1", quantity=quantity)
        if quantity > MAX_LINE_QUANTITY:
            raise InvalidSelection(
                f"Quantity can't exceed {MAX_LINE_QUANTITY}",
                quantity=quantity
            )
        available = self.ledger.available(db, product.id)
        if quantity > available:
            raise InvalidSelection(
                f"Insufficient stock for {product.name}. Available: {available}",
                product_id=product.id,
                quantity=quantity,
                available=available
            )

    def refresh_cache(self, account_id: str, item_count: int) -> None:
        cache_key = f"cart:{account_id}"
        with self.tracer.start_as_current_span("cache.set") as cache_span:
            cache_span.set_attribute("cache.system", "redis")
            cache_span.set_attribute("cache.operation", "SET")
            cache_span.set_attribute("cache.key", cache_key)
            try:
                if item_count:
                    self.redis_client.set(cache_key, item_count, ex=CART_CACHE_TTL)
                else:
                    self.redis_client.delete(cache_key)
            except redis.RedisError as e:
                logger.warning("Failed to update cart cache", extra={
                    "account_id": account_id,
                    "error": str(e)
                })

    def _commit(self, db: Session, cart: Cart, operation: str) -> None:
        db.commit()
        cart_mutations_counter.add(1, {"operation": operation})
        self.refresh_cache(cart.account_id, sum(line.quantity for line in cart.lines))

    def upsert_line(
        self,
        db: Session,
        account_id: str,
        product_id: int,
        quantity: int,
        size: Optional[str] = None,
        color: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Add a product to the account's cart.

        A line with the same product and variant is merged by summing the
        quantities; the merged quantity is validated as a whole.

        Returns:
            Cart contents

        Raises:
            NotFound: If the product doesn't exist
            InvalidSelection: If quantity, variant or availability is invalid
        """
        span = trace.get_current_span()
        span.set_attribute("product.id", product_id)
        span.set_attribute("quantity", quantity)

        if quantity < 1:
            raise InvalidSelection("Quantity must be at least 1", quantity=quantity)
        product = self._get_product(db, product_id)
        self._validate_variant(product, size, color)

        cart = self.find_cart(db, account_id)
        if cart is None:
            cart = Cart(account_id=account_id)
            db.add(cart)

        existing = next(
            (line for line in cart.lines
             if line.product_id == product_id and line.size == size and line.color == color),
            None
        )
        new_quantity = quantity + (existing.quantity if existing else 0)
        self._validate_quantity(db, product, new_quantity)

        if existing:
            existing.quantity = new_quantity
            existing.unit_price = product.price
        else:
            cart.lines.append(CartLine(
                product_id=product_id,
                quantity=quantity,
                size=size,
                color=color,
                unit_price=product.price
            ))

        self._commit(db, cart, "upsert")
        logger.info("Added product to cart", extra={
            "account_id": account_id,
            "product_id": product_id,
            "quantity": quantity,
            "line_quantity": new_quantity,
            "size": size,
            "color": color
        })
        return self.get_cart(db, account_id)

    def update_line_qty(self, db: Session, account_id: str, line_id: int, quantity: int) -> Dict[str, Any]:
        """
        Set the quantity of a cart line.

        Raises:
            NotFound: If the cart or line doesn't exist
            InvalidSelection: If the quantity is invalid or unavailable
        """
        cart = self._require_cart(db, account_id)
        line = self._require_line(cart, line_id)
        product = self._get_product(db, line.product_id)
        self._validate_quantity(db, product, quantity)

        line.quantity = quantity
        line.unit_price = product.price

        self._commit(db, cart, "update")
        logger.info("Updated cart line quantity", extra={
            "account_id": account_id,
            "line_id": line_id,
            "quantity": quantity
        })
        return self.get_cart(db, account_id)

    def remove_line(self, db: Session, account_id: str, line_id: int) -> Dict[str, Any]:
        """
        Remove a line from the cart.

        Raises:
            NotFound: If the cart or line doesn't exist
        """
        cart = self._require_cart(db, account_id)
        line = self._require_line(cart, line_id)
        cart.lines.remove(line)

        self._commit(db, cart, "remove")
        logger.info("Removed cart line", extra={
            "account_id": account_id,
            "line_id": line_id
        })
        return self.get_cart(db, account_id)

    def clear(self, db: Session, account_id: str) -> None:
        """Empty the account's cart and drop its discount."""
        with self.tracer.start_as_current_span("db.query.delete_cart_lines") as db_span:
            db_span.set_attribute("db.operation", "DELETE")
            db_span.set_attribute("db.table", "cart_lines")
            db_span.set_attribute("account.id", account_id)

            cart = self.find_cart(db, account_id)
            if cart is None:
                return
            db_span.set_attribute("db.rows_affected", len(cart.lines))
            cart.lines.clear()
            cart.discount_code = None

        self._commit(db, cart, "clear")

    def claim_lines(self, db: Session, cart: Cart, line_ids: List[int]) -> None:
        """
        Delete the checked-out lines and drop the discount, without committing.

        Raises:
            CartChanged: If some of the lines were already gone
        """
        with self.tracer.start_as_current_span("db.query.claim_cart_lines") as db_span:
            db_span.set_attribute("db.operation", "DELETE")
            db_span.set_attribute("db.table", "cart_lines")
            db_span.set_attribute("cart.id", cart.id)

            rows = db.query(CartLine).filter(
                CartLine.cart_id == cart.id,
                CartLine.id.in_(line_ids)
            ).delete(synchronize_session=False)
            db_span.set_attribute("db.rows_affected", rows)

            if rows != len(line_ids):
                logger.warning("Cart changed during checkout", extra={
                    "cart_id": cart.id,
                    "expected": len(line_ids),
                    "claimed": rows
                })
                raise CartChanged(len(line_ids), rows)

            db.expire(cart, ["lines"])
            cart.discount_code = None
            db.flush()

    def apply_discount(self, db: Session, account_id: str, code: str) -> Dict[str, Any]:
        """
        Attach a discount code to the cart.

        Raises:
            NotFound: If the account has no cart
            InvalidSelection: If the code is unknown
        """
        lookup_discount(code)
        cart = self._require_cart(db, account_id)
        cart.discount_code = code
        self._commit(db, cart, "apply_discount")
        logger.info("Applied discount code", extra={
            "account_id": account_id,
            "code": code
        })
        return self.get_cart(db, account_id)

    def remove_discount(self, db: Session, account_id: str) -> Dict[str, Any]:
        """Detach the cart's discount code."""
        cart = self._require_cart(db, account_id)
        cart.discount_code = None
        self._commit(db, cart, "remove_discount")
        return self.get_cart(db, account_id)

    def discount_for(self, cart: Cart) -> Optional[Discount]:
        """Resolve the cart's discount code; codes no longer configured are ignored."""
        if not cart.discount_code:
            return None
        try:
            return lookup_discount(cart.discount_code)
        except InvalidSelection:
            logger.warning("Cart holds a discount code that is no longer configured", extra={
                "account_id": cart.account_id,
                "code": cart.discount_code
            })
            return None

    def get_cart(self, db: Session, account_id: str) -> Dict[str, Any]:
        """
        Get the account's cart contents.

        Prices shown are the live product prices; they are advisory and
        re-read at checkout.

        Returns:
            Cart contents with lines and display totals
        """
        cart = self.find_cart(db, account_id)
        items = []
        pairs = []

        for line in (cart.lines if cart else []):
            product = line.product
            items.append({
                "id": line.id,
                "product_id": line.product_id,
                "product_name": product.name,
                "price": product.price,
                "quantity": line.quantity,
                "size": line.size,
                "color": line.color,
                "subtotal": product.price * line.quantity
            })
            pairs.append((product.price, line.quantity))

        discount = self.discount_for(cart) if cart else None
        totals = compute_totals(pairs, discount) if pairs else EMPTY_TOTALS

        return {
            "account_id": account_id,
            "items": items,
            "item_count": sum(item["quantity"] for item in items),
            "discount_code": discount.code if discount else None,
            "subtotal": totals.items_subtotal,
            "tax": totals.tax,
            "shipping": totals.shipping,
            "discount": totals.discount_amount,
            "total": totals.total
        }
