import json
import logging
import time
import traceback
from contextvars import ContextVar
from typing import Any
from uuid import uuid4

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from gradeportal.core.errors import InvalidIdentity, StorageUnavailable

request_id_ctx: ContextVar[str] = ContextVar("request_id", default="-")
root_logger = logging.getLogger("gradeportal")
logger = logging.getLogger("gradeportal.api")

STORAGE_RETRY_AFTER_SECONDS = 30


def setup_observability() -> None:
    """Send every `gradeportal.*` record to stderr as a bare JSON line."""
    if root_logger.handlers:
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)
    root_logger.propagate = False


def get_request_id() -> str:
    return request_id_ctx.get()


def log_event(target: logging.Logger, level: int, event: str, **fields: Any) -> None:
    target.log(level, json.dumps({"event": event, "request_id": get_request_id(), **fields}))


def _request_id_for(request: Request) -> str:
    return (
        getattr(request.state, "request_id", None)
        or request.headers.get("x-request-id")
        or get_request_id()
    )


def _error_response(
    *,
    status_code: int,
    request: Request,
    code: str,
    message: str,
    details: list[dict] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        headers=headers,
        content={
            "error": {
                "code": code,
                "message": message,
                "request_id": _request_id_for(request),
                "path": request.url.path,
                "details": details,
            }
        },
    )


async def request_logging_middleware(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or str(uuid4())
    request.state.request_id = request_id
    token = request_id_ctx.set(request_id)
    started = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
    finally:
        log_event(
            logger,
            logging.INFO,
            "request",
            method=request.method,
            path=request.url.path,
            status_code=status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        request_id_ctx.reset(token)

    response.headers["X-Request-ID"] = request_id
    return response


_STATUS_CODE_MAP = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    422: "validation_error",
    503: "service_unavailable",
}


async def http_exception_handler(request: Request, exc: HTTPException):
    message = exc.detail if isinstance(exc.detail, str) else "HTTP error"
    return _error_response(
        status_code=exc.status_code,
        request=request,
        code=_STATUS_CODE_MAP.get(exc.status_code, "http_error"),
        message=message,
        details=None if isinstance(exc.detail, str) else exc.detail,
        headers=exc.headers,
    )


async def invalid_identity_handler(request: Request, exc: InvalidIdentity):
    return _error_response(
        status_code=400,
        request=request,
        code="bad_request",
        message=exc.message,
        details=[{"field": "identity", "message": exc.message, "type": "invalid_identity"}],
    )


async def storage_unavailable_handler(request: Request, exc: StorageUnavailable):
    logger.error(
        json.dumps(
            {
                "event": "storage_unavailable",
                "request_id": _request_id_for(request),
                "path": request.url.path,
                "operation": exc.operation,
                "error": str(exc.__cause__ or exc),
            }
        )
    )
    return _error_response(
        status_code=503,
        request=request,
        code="service_unavailable",
        message="Security storage is temporarily unavailable",
        headers={"Retry-After": str(STORAGE_RETRY_AFTER_SECONDS)},
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    details = []
    for err in exc.errors():
        # "identity" rather than "query.identity" or "body.identity".
        location = [str(part) for part in err.get("loc", []) if part not in ("body", "query", "path")]
        details.append(
            {
                "field": ".".join(location) if location else "body",
                "message": err.get("msg", "Invalid value"),
                "type": err.get("type"),
            }
        )

    return _error_response(
        status_code=422,
        request=request,
        code="validation_error",
        message="Validation failed",
        details=details,
    )


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(
        json.dumps(
            {
                "event": "unhandled_exception",
                "request_id": _request_id_for(request),
                "path": request.url.path,
                "error": str(exc),
                "traceback": traceback.format_exc(limit=10),
            }
        )
    )
    return _error_response(
        status_code=500,
        request=request,
        code="internal_error",
        message="Internal server error",
    )
