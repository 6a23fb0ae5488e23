"""Dependency injection for services."""
from typing import Any
from fastapi import Depends, Request

from services.cart_service import CartService
from services.external_service import ExternalServiceClient
from services.inventory_ledger import InventoryLedger
from services.order_service import OrderService
from services.order_state_machine import OrderStateMachine
from services.payment_reconciler import PaymentReconciler


def get_redis_client(request: Request) -> Any:
    """Get Redis client from app state."""
    return request.app.state.redis_client


def get_http_client(request: Request) -> Any:
    """Get HTTP client from app state."""
    return request.app.state.http_client


def get_ledger() -> InventoryLedger:
    """Get inventory ledger instance."""
    return InventoryLedger()


def get_state_machine(ledger: InventoryLedger = Depends(get_ledger)) -> OrderStateMachine:
    """Get order state machine instance."""
    return OrderStateMachine(ledger)


def get_cart_service(
    redis_client: Any = Depends(get_redis_client),
    ledger: InventoryLedger = Depends(get_ledger)
) -> CartService:
    """Get cart service instance."""
    return CartService(redis_client, ledger)


def get_external_service(http_client: Any = Depends(get_http_client)) -> ExternalServiceClient:
    """Get external service client."""
    return ExternalServiceClient(http_client)


def get_order_service(
    cart_service: CartService = Depends(get_cart_service),
    ledger: InventoryLedger = Depends(get_ledger),
    state_machine: OrderStateMachine = Depends(get_state_machine),
    external_service: ExternalServiceClient = Depends(get_external_service)
) -> OrderService:
    """Get order service instance."""
    return OrderService(cart_service, ledger, state_machine, external_service)


def get_reconciler(state_machine: OrderStateMachine = Depends(get_state_machine)) -> PaymentReconciler:
    """Get payment reconciler instance."""
    return PaymentReconciler(state_machine)
