"""Translate checkout orchestration errors into JSON responses."""

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from protean.integrations.fastapi import register_exception_handlers

from checkout.errors import CheckoutError

logger = structlog.get_logger(__name__)


async def checkout_error_handler(request: Request, exc: CheckoutError) -> JSONResponse:
    log = logger.warning if exc.status_code < 500 else logger.error
    log("checkout_error", path=request.url.path, code=exc.code, error=exc.message, **exc.details)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.to_dict(), "retryable": exc.retryable},
    )


def register_checkout_exception_handlers(app: FastAPI) -> None:
    """Protean's domain exception handlers plus the checkout error taxonomy."""
    register_exception_handlers(app)
    app.add_exception_handler(CheckoutError, checkout_error_handler)
