"""Mapping of domain errors to JSON error responses"""

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder

from fxpay_gateway.api.dependencies import get_audit_sink
from fxpay_gateway.domain.exceptions import DomainException, ValidationError
from fxpay_gateway.infrastructure.clients.audit import AuditEvent
from fxpay_gateway.utils.date_utils import utcnow

logger = logging.getLogger(__name__)


def error_body(message: str, code: str, details: Optional[Any] = None) -> Dict[str, Any]:
    return {
        "error": message,
        "code": code,
        "details": jsonable_encoder(details),
        "timestamp": utcnow().isoformat(),
    }


def domain_error_body(exc: DomainException) -> Dict[str, Any]:
    return error_body(exc.message, exc.code, exc.details)


def _report(request: Request, status_code: int, code: str, message: str) -> None:
    context = {
        "method": request.method,
        "path": request.url.path,
        "status_code": status_code,
        "code": code,
        "request_id": getattr(request.state, "request_id", None),
        "correlation_id": getattr(request.state, "correlation_id", None),
    }
    log = logger.error if status_code >= 500 else logger.warning
    log(message, extra=context)

    get_audit_sink().record(
        AuditEvent(
            action="request_error",
            category="system",
            severity="critical" if status_code >= 500 else "warning",
            actor=request.headers.get("x-actor-id"),
            metadata={**context, "message": message},
            tags=["error"],
        )
    )


async def handle_domain_exception(request: Request, exc: DomainException) -> JSONResponse:
    _report(request, exc.status_code, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=domain_error_body(exc))


async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    _report(request, ValidationError.status_code, ValidationError.code, "Request validation failed")
    return JSONResponse(
        status_code=ValidationError.status_code,
        content=error_body("Request validation failed", ValidationError.code, exc.errors()),
    )


async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error", extra={"path": request.url.path})
    _report(request, 500, DomainException.code, "Internal server error")
    return JSONResponse(status_code=500, content=error_body("Internal server error", DomainException.code))


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DomainException, handle_domain_exception)
    app.add_exception_handler(RequestValidationError, handle_request_validation)
    app.add_exception_handler(Exception, handle_unexpected)
