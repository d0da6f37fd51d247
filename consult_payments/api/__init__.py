"""
API module for the consultation payment service
"""

from .metrics_endpoint import router as metrics_router
from .payment_routes import payment_error_handler, router as payment_router

__all__ = ["payment_router", "metrics_router", "payment_error_handler"]
