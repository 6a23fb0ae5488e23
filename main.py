"""Main application entry point."""
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Depends, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
import redis
import httpx
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.instrumentation.redis import RedisInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

from config import (
    API_VERSION,
    HTTP_TIMEOUT_SECONDS,
    OTEL_ENABLED,
    RATE_LIMIT_ENABLED,
    REDIS_URL,
    SERVICE_NAME
)
import database
import schemas
import dependencies
from auth import get_current_account
from database import init_db, engine
from errors import ShopError
from models import Account
from monitoring import init_profiling
from logging_config import setup_logging
from routers import admin, cart, orders, products, webhooks
from redis_rate_limiter import RedisRateLimiter

# Setup structured logging
setup_logging()
logger = logging.getLogger(__name__)


# Sync client shared by the rate limiter and the cart cache
redis_client = redis.from_url(REDIS_URL, decode_responses=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    logger.info("Starting application...")

    init_db()

    if OTEL_ENABLED:
        RedisInstrumentor().instrument(redis_client=redis_client)
    app.state.redis_client = redis_client
    logger.info("Redis client initialized")

    http_client = httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS)
    if OTEL_ENABLED:
        HTTPXClientInstrumentor().instrument_client(http_client)
    app.state.http_client = http_client
    logger.info("HTTP client initialized")

    init_profiling()

    logger.info("Application startup complete")

    yield

    logger.info("Shutting down application...")
    await http_client.aclose()
    logger.info("Application shutdown complete")


app = FastAPI(
    title="Storefront Order Service",
    version=API_VERSION,
    lifespan=lifespan
)


@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError):
    """Render domain errors in the API error envelope."""
    if exc.status_code >= 500:
        logger.error("Request failed", extra={
            "path": request.url.path,
            "error": exc.message,
            "details": exc.details
        })
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_response()))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Render request validation failures in the API error envelope."""
    return JSONResponse(
        status_code=400,
        content=jsonable_encoder({
            "success": False,
            "error": "Validation failed",
            "details": {"errors": exc.errors()}
        })
    )


# Security middleware with Redis-backed dual-tier rate limiting
if RATE_LIMIT_ENABLED:
    app.add_middleware(RedisRateLimiter, redis_client=redis_client)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

if OTEL_ENABLED:
    FastAPIInstrumentor.instrument_app(app)
    SQLAlchemyInstrumentor().instrument(engine=engine)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy", "service": SERVICE_NAME, "version": API_VERSION}


app.include_router(products.router)
app.include_router(cart.router)
app.include_router(orders.router)
app.include_router(admin.router)
app.include_router(webhooks.router)


# Checkout is also served at the top level
@app.post("/checkout", response_model=schemas.CheckoutResponse, status_code=201)
async def checkout_compat(
    request: schemas.CheckoutRequest,
    db: Session = Depends(database.get_db),
    account: Account = Depends(get_current_account),
    order_service = Depends(dependencies.get_order_service)
):
    """Turn the cart into an order and start payment - requires authentication."""
    return await orders.checkout(request, db, account, order_service)


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
