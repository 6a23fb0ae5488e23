"""Payment provider webhook router."""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from database import get_db
from errors import InvalidSelection, OrphanPayment, Unauthorized
from schemas import PaymentWebhookEvent, PaymentWebhookResponse
from dependencies import get_reconciler
from monitoring import payment_webhooks_counter
from services.payment_reconciler import verify_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/payment", response_model=PaymentWebhookResponse)
async def payment_webhook(
    request: Request,
    x_payment_signature: Optional[str] = Header(None),
    db: Session = Depends(get_db),
    reconciler = Depends(get_reconciler)
):
    """
    Receive a payment provider event.

    The signature is checked against the raw body before it is parsed.
    Unmatched payments are acknowledged with 202 so the provider doesn't
    keep retrying them; they are recorded for follow-up.
    """
    body = await request.body()
    if not verify_signature(body, x_payment_signature):
        payment_webhooks_counter.add(1, {"type": "unknown", "outcome": "bad_signature"})
        logger.warning("Payment webhook rejected: invalid signature", extra={
            "client_ip": request.client.host if request.client else None
        })
        raise Unauthorized("Invalid webhook signature")

    try:
        event = PaymentWebhookEvent.model_validate_json(body)
    except ValidationError as e:
        raise InvalidSelection(
            "Invalid payment event",
            errors=e.errors(include_url=False, include_context=False, include_input=False)
        )

    try:
        result = reconciler.handle_event(db, event.model_dump())
    except OrphanPayment as e:
        return JSONResponse(
            status_code=e.status_code,
            content={"received": True, "outcome": "orphan", "order_id": None}
        )

    return {"received": True, **result}
