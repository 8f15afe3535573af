"""
Domain exceptions and their HTTP mapping
"""

import logging
from typing import Any, Dict

import stripe
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from clockwork.config.settings import settings

logger = logging.getLogger(__name__)


class BillingError(Exception):
    """Raised when a Stripe operation fails or billing state forbids it"""
    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)

    @classmethod
    def from_stripe(cls, error: stripe.StripeError) -> "BillingError":
        """Map a Stripe exception to a billing error with the right status"""
        message = getattr(error, "user_message", None) or str(error)
        if isinstance(error, (stripe.CardError, stripe.InvalidRequestError)):
            return cls(message, status_code=400)
        return cls(message, status_code=502)


class RestrictionError(Exception):
    """Raised when a restricted account attempts a creation-type action"""
    def __init__(self, payload: Dict[str, Any]):
        self.payload = payload
        super().__init__(payload.get("message", "Account restricted"))


def register_exception_handlers(app: FastAPI) -> None:
    """Attach JSON error responses for domain and database exceptions"""

    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": "Billing error", "message": exc.message},
        )

    @app.exception_handler(RestrictionError)
    async def restriction_error_handler(request: Request, exc: RestrictionError):
        return JSONResponse(status_code=403, content=exc.payload)

    @app.exception_handler(IntegrityError)
    async def integrity_error_handler(request: Request, exc: IntegrityError):
        logger.warning(f"Constraint violation on {request.method} {request.url.path}: {exc.orig}")
        return JSONResponse(
            status_code=400,
            content={
                "error": "Database constraint violation",
                "message": "The operation violates database constraints",
            },
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "message": str(exc) if settings.debug else "Something went wrong",
            },
        )
