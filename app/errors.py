"""JSON error responses for the billing API.

Outside the webhook routes every error uses one envelope::

    {"code": ..., "message": ..., "details": ..., "request_id": ...}

Webhook routes answer the billing provider, which only reads the status
code, so an unexpected failure there returns the same
``{"received": false}`` body the webhook router produces itself.
"""
from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.services.billing.errors import (
    BillingError,
    BillingProviderError,
    DomainInconsistency,
    InvalidTransition,
)

logger = logging.getLogger(__name__)

WEBHOOK_FAILURE_BODY = {"received": False, "error": "internal_failure"}


def _request_id(request: Request) -> str:
    # Set by ObservabilityMiddleware; absent if the error happened before it ran.
    return getattr(request.state, "request_id", "unknown")


def _respond(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    details: object = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "code": code,
            "message": message,
            "details": details,
            "request_id": _request_id(request),
        },
    )


def _billing_status(exc: BillingError) -> tuple[int, str]:
    if isinstance(exc, BillingProviderError):
        return 502, "billing_provider_unavailable"
    if isinstance(exc, InvalidTransition):
        return 409, "invalid_transition"
    if isinstance(exc, DomainInconsistency):
        return 409, "domain_inconsistency"
    return 400, "billing_error"


async def _on_http_error(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, dict):
        return _respond(
            request,
            exc.status_code,
            detail.get("code", f"http_{exc.status_code}"),
            detail.get("message", "Request failed"),
            detail.get("details"),
        )
    if isinstance(detail, str):
        return _respond(request, exc.status_code, f"http_{exc.status_code}", detail)
    return _respond(
        request, exc.status_code, f"http_{exc.status_code}", "Request failed", detail
    )


async def _on_validation_error(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    logger.warning(
        "Validation error on %s %s: %s",
        request.method,
        request.url.path,
        exc.errors(),
        extra={"request_id": _request_id(request)},
    )
    return _respond(request, 422, "validation_error", "Validation error", exc.errors())


async def _on_billing_error(request: Request, exc: BillingError) -> JSONResponse:
    status_code, code = _billing_status(exc)
    logger.warning(
        "Billing error on %s %s: %s",
        request.method,
        request.url.path,
        exc,
        extra={"request_id": _request_id(request)},
    )
    return _respond(request, status_code, code, str(exc))


async def _on_unhandled(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "Unhandled exception on %s %s",
        request.method,
        request.url.path,
        extra={"request_id": _request_id(request)},
    )
    if "/webhooks/" in request.url.path:
        return JSONResponse(status_code=500, content=WEBHOOK_FAILURE_BODY)
    # Exception text is logged, never returned.
    return _respond(request, 500, "internal_error", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(HTTPException, _on_http_error)
    app.add_exception_handler(RequestValidationError, _on_validation_error)
    app.add_exception_handler(BillingError, _on_billing_error)
    app.add_exception_handler(Exception, _on_unhandled)
