"""
CarePay — FastAPI Application Entry Point

Aggregates the payment, payment-link and admin routers, configures middleware and error
rendering, and initializes the database on startup.
"""
import logging
import time
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from carepay.config import Settings, get_settings
from carepay.database import get_db, init_db
from carepay.errors import PaymentServiceError, payment_error_handler
from carepay.routes import payment_router, links_router, admin_router
from carepay.schemas.schemas import HealthResponse
from carepay.services.gateway import PaymentGateway, build_gateway
from carepay.utils.log import configure_logging

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, gateway: Optional[PaymentGateway] = None) -> FastAPI:
    """Build the application around one Settings object and one gateway adapter."""
    settings = settings or get_settings()

    # ─── Application Instance ───────────────────────────────────────
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description=(
            "Payment reconciliation API for pet-services bookings. Issues Razorpay "
            "orders, reconciles checkout and webhook callbacks into one payment record "
            "per order, and projects confirmed payments onto customers and booking cases."
        ),
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.settings = settings
    app.state.gateway = gateway or build_gateway(settings)
    app.state.boot_time = time.time()

    # ─── Startup ─────────────────────────────────────────────────────
    @app.on_event("startup")
    def on_startup():
        """Initialize logging and database tables, then log boot info."""
        configure_logging(settings)
        init_db()

        logger.info(
            "\n%s\n  %s v%s\n  TIME: %s\n  GATEWAY: %s\n  DATABASE: %s\n  DEBUG: %s\n%s",
            "=" * 60,
            settings.APP_NAME, settings.APP_VERSION,
            datetime.now().isoformat(),
            "[DEMO] credentials missing" if app.state.gateway.demo_mode else "[OK] Razorpay",
            settings.DATABASE_URL,
            settings.DEBUG,
            "=" * 60,
        )

    # ─── Middleware ──────────────────────────────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log every API request with timing."""
        start = time.time()
        response = await call_next(request)
        duration = round((time.time() - start) * 1000, 1)

        if request.url.path.startswith("/api"):
            logger.info("-> %s %s -> %s (%sms)", request.method, request.url.path, response.status_code, duration)

        return response

    app.add_exception_handler(PaymentServiceError, payment_error_handler)

    # ─── API Routers ─────────────────────────────────────────────────
    app.include_router(links_router)
    app.include_router(payment_router)
    app.include_router(admin_router)

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    def deep_health(db: Session = Depends(get_db)):
        """Detailed health check including database and gateway mode."""
        db_ok = False
        try:
            db.execute(text("SELECT 1"))
            db_ok = True
        except SQLAlchemyError as e:
            logger.error("Health check database query failed: %s", e)

        demo_mode = app.state.gateway.demo_mode
        return HealthResponse(
            status="healthy" if db_ok else "degraded",
            service=settings.APP_NAME,
            version=settings.APP_VERSION,
            database="connected" if db_ok else "disconnected",
            provider="demo" if demo_mode else "razorpay",
            demo_mode=demo_mode,
            uptime_seconds=round(time.time() - app.state.boot_time, 1),
        )

    return app


app = create_app()
