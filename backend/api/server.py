# api/server.py
# ============================================================================
# BEAN CHECKOUT BACKEND — FASTAPI SERVER
# ============================================================================
# App factory with CORS, timing header, health check, domain error mapping
# and the processor webhook endpoint
# ============================================================================

import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from api.auth import TokenAuthenticator
from api.routes import beans_router, cart_router, checkout_router, profile_router
from config import Settings, configure_logging, settings as default_settings
from database import Database
from errors import CheckoutError, DuplicateEffectError
from pipeline.order_materializer import OrderMaterializer
from pipeline.payment_gateway import PaymentGateway
from pipeline.webhook_verifier import WebhookVerifier
from schemas.commerce import WebhookAck
from services.checkout import CheckoutService
from services.payment_processor import PaymentProcessor, StripePaymentProcessor
from services.seller_onboarding import SellerOnboardingService
from storage.interfaces import IAuditLog, IStore
from storage.memory import InMemoryAuditLog
from storage.postgres import PostgresAuditLog, PostgresStore

logger = structlog.get_logger(component="server")

MAX_WEBHOOK_BODY_BYTES = 65536


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    uptime_seconds: float


async def _read_capped_body(request: Request, limit: int) -> bytes:
    """Read at most limit bytes; larger bodies are rejected with 413 before being buffered"""
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > limit:
        logger.warning("webhook_body_too_large", declared=int(declared))
        raise HTTPException(status_code=413, detail="Request body too large")

    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > limit:
            logger.warning("webhook_body_too_large", received=len(body))
            raise HTTPException(status_code=413, detail="Request body too large")
    return bytes(body)


# ============================================================================
# WIRING
# ============================================================================

def _wire(
    app: FastAPI,
    settings: Settings,
    store: IStore,
    audit_log: IAuditLog,
    processor: PaymentProcessor,
    verifier: WebhookVerifier,
):
    """Build the request-independent objects once and hang them on app.state"""
    materializer = OrderMaterializer(store, audit_log, timeout=settings.ORDER_TX_TIMEOUT_SECONDS)
    app.state.store = store
    app.state.audit_log = audit_log
    app.state.checkout = CheckoutService(store, processor, currency=settings.CHECKOUT_CURRENCY)
    app.state.gateway = PaymentGateway(verifier, materializer, audit_log)
    app.state.onboarding = SellerOnboardingService(
        store,
        processor,
        refresh_url=settings.CONNECT_REFRESH_URL,
        return_url=settings.CONNECT_RETURN_URL,
        country=settings.CONNECT_COUNTRY,
    )


def create_app(
    settings: Settings = default_settings,
    store: Optional[IStore] = None,
    audit_log: Optional[IAuditLog] = None,
    processor: Optional[PaymentProcessor] = None,
    verifier: Optional[WebhookVerifier] = None,
) -> FastAPI:
    """
    Build the application.

    With no store injected, the lifespan opens a Postgres pool from
    settings.DATABASE_URL and closes it on shutdown.
    """
    configure_logging(settings.LOG_LEVEL)
    processor = processor or StripePaymentProcessor(settings.STRIPE_SECRET_KEY)
    verifier = verifier or WebhookVerifier(
        settings.STRIPE_WEBHOOK_SECRET, tolerance=settings.WEBHOOK_TOLERANCE_SECONDS
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic."""
        logger.info("service_starting", version=settings.VERSION, env=settings.ENV)

        db = None
        if store is None:
            db = Database(settings.DATABASE_URL, settings.MIN_POOL_SIZE, settings.MAX_POOL_SIZE)
            await db.initialize()
            _wire(app, settings, PostgresStore(db), PostgresAuditLog(db), processor, verifier)

        yield

        logger.info("service_stopping")
        if db is not None:
            await db.close()

    app = FastAPI(
        title="Bean Checkout Backend",
        description="Coffee bean marketplace: catalog, cart, checkout and payment webhooks",
        version=settings.VERSION,
        lifespan=lifespan,
    )
    app.state.started_at = datetime.now(timezone.utc)
    app.state.authenticator = TokenAuthenticator(settings.JWT_SECRET, settings.JWT_AUDIENCE)
    if store is not None:
        _wire(app, settings, store, audit_log or InMemoryAuditLog(), processor, verifier)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Stripe-Signature"],
    )

    # ========================================================================
    # MIDDLEWARE
    # ========================================================================

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing header."""
        start = time.perf_counter()
        response = await call_next(request)
        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        return response

    # ========================================================================
    # ERROR MAPPING
    # ========================================================================

    @app.exception_handler(CheckoutError)
    async def checkout_error_handler(request: Request, exc: CheckoutError):
        if isinstance(exc, DuplicateEffectError):
            # Should have been absorbed by the materializer
            logger.error("duplicate_effect_escaped", path=request.url.path, key=exc.key)
            return JSONResponse(status_code=200, content={"status": "already_processed"})

        if exc.status_code >= 500:
            logger.error("request_failed", path=request.url.path, error=exc.message,
                         error_type=type(exc).__name__)
        headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
        return JSONResponse(
            status_code=exc.status_code, content={"detail": exc.message}, headers=headers
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error("unhandled_error", path=request.url.path, error=str(exc),
                     error_type=type(exc).__name__, exc_info=exc)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    # ========================================================================
    # ENDPOINTS
    # ========================================================================

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        """Health check endpoint."""
        uptime = (datetime.now(timezone.utc) - app.state.started_at).total_seconds()
        return HealthResponse(status="healthy", version=settings.VERSION, uptime_seconds=uptime)

    @app.post("/api/webhooks/stripe", response_model=WebhookAck)
    async def stripe_webhook(request: Request):
        """
        Processor notifications.

        400: signature, parse or attribution failure (do not retry)
        200: applied, already applied, or ignored
        413: body over MAX_WEBHOOK_BODY_BYTES
        503: store unavailable or order status conflict (processor retries)
        """
        payload = await _read_capped_body(request, MAX_WEBHOOK_BODY_BYTES)
        gateway: PaymentGateway = request.app.state.gateway
        return await gateway.process_webhook(payload, request.headers.get("Stripe-Signature"))

    app.include_router(beans_router)
    app.include_router(cart_router)
    app.include_router(checkout_router)
    app.include_router(profile_router)

    return app


# ============================================================================
# MAIN
# ============================================================================

def main():
    uvicorn.run(
        "api.server:create_app",
        factory=True,
        host=default_settings.HOST,
        port=default_settings.PORT,
        reload=default_settings.DEBUG,
        log_level="info",
    )


if __name__ == "__main__":
    main()
