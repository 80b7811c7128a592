from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from estatevault.api.schemas import Envelope, ErrorBody
from estatevault.logging import get_correlation_id, get_logger
from estatevault.service.errors import ServiceError
from estatevault.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "validation_error",
    409: "conflict",
    422: "validation_error",
    423: "locked",
    429: "rate_limited",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _retry_after(detail: Optional[Dict[str, Any]]) -> Optional[Dict[str, str]]:
    """Lockouts report minutes, rate limits and 2FA lockouts report seconds."""
    if not detail:
        return None
    if detail.get("retry_after_minutes") is not None:
        return {"Retry-After": str(int(detail["retry_after_minutes"]) * 60)}
    if detail.get("retry_after_seconds") is not None:
        return {"Retry-After": str(int(detail["retry_after_seconds"]))}
    return None


def _error_response(
    status_code: int,
    message: str,
    details: Any = None,
    code: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    envelope = Envelope(
        status="error",
        error=ErrorBody(code=code or _error_code_for_status(status_code), message=message, details=details),
    )
    request_id = get_correlation_id()
    if request_id:
        envelope.request_id = request_id
    return JSONResponse(status_code=status_code, content=envelope.model_dump(), headers=headers)


async def _on_service_error(request: Request, exc: ServiceError) -> JSONResponse:
    # Auth failures are expected traffic; only 5xx is an error.
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "request_rejected",
        path=request.url.path,
        status_code=exc.status_code,
        error_code=exc.error_code,
        kind=exc.detail.get("kind"),
    )
    return _error_response(
        exc.status_code, exc.message, exc.detail or None, exc.error_code, _retry_after(exc.detail)
    )


async def _on_constraint(request: Request, exc: ConstraintViolation) -> JSONResponse:
    logger.warning("constraint_violation", path=request.url.path, detail=exc.detail)
    return _error_response(409, exc.message, exc.detail, "conflict")


async def _on_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    logger.info("request_invalid", path=request.url.path, problems=len(problems))
    return _error_response(400, "invalid request", problems, "validation_error")


async def _on_http(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    message = exc.detail if isinstance(exc.detail, str) else "http error"
    return _error_response(exc.status_code, message, headers=getattr(exc, "headers", None))


async def _on_unhandled(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_exception", path=request.url.path, error_type=type(exc).__name__
    )
    return _error_response(500, "internal server error", code="server_error")


def register_exception_handlers(app: FastAPI) -> None:
    """Every failure leaves the API as the standard error envelope."""
    app.add_exception_handler(ServiceError, _on_service_error)
    app.add_exception_handler(ConstraintViolation, _on_constraint)
    app.add_exception_handler(RequestValidationError, _on_validation)
    app.add_exception_handler(StarletteHTTPException, _on_http)
    app.add_exception_handler(Exception, _on_unhandled)
