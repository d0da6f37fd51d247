"""
FastAPI application factory.

Creates and configures the FastAPI application with:
- CORS middleware
- PaymentError -> JSON error mapping
- Payment and metrics routers
"""
import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import metrics_router, payment_error_handler, payment_router
from .exceptions import PaymentError
from .startup import lifespan

logger = logging.getLogger(__name__)


def configure_cors(app: FastAPI):
    """Configure CORS middleware for the scheduling frontend."""
    origins = [
        origin.strip()
        for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173").split(",")
        if origin.strip()
    ]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    app = FastAPI(
        title="Consultation Payments",
        description="""
Payment lifecycle for telemedicine consultations.

## Features
- Card hold (pre-authorization) when the appointment is scheduled
- Capture after the consultation is delivered
- Release on cancellation
- Processor webhook confirmation and periodic reconciliation
""",
        version="1.0.0",
        lifespan=lifespan,
        redirect_slashes=False,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    configure_cors(app)
    app.add_exception_handler(PaymentError, payment_error_handler)

    app.include_router(payment_router)
    app.include_router(metrics_router)

    @app.get("/health", tags=["health"])
    async def health():
        service = getattr(app.state, "payment_service", None)
        redis_ok = bool(service and service.manager.redis.is_connected)
        return {
            "status": "healthy" if redis_ok else "degraded",
            "redis": "connected" if redis_ok else "disconnected",
        }

    return app
