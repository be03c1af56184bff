"""Request-id propagation, request logging, and uniform error envelopes."""

from __future__ import annotations

from time import perf_counter
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from fastapi import status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError, ResponseValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import DBAPIError, OperationalError
from starlette.exceptions import HTTPException as StarletteHTTPException

from taskshare.core.config import settings
from taskshare.core.errors import ProviderError, TaskShareError
from taskshare.core.logging import get_logger

if TYPE_CHECKING:
    from fastapi import FastAPI
    from starlette.requests import Request
    from starlette.types import ASGIApp, Message, Receive, Scope, Send

REQUEST_ID_HEADER = "X-Request-Id"
_REQUEST_ID_MAX_LENGTH = 128
_HEALTH_PATHS = frozenset({"/health", "/healthz", "/readyz"})

logger = get_logger(__name__)


def _json_safe(value: object) -> object:
    if value is None or isinstance(value, str | int | float | bool):
        return value
    if isinstance(value, bytes | bytearray | memoryview):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, dict):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, list | tuple | set):
        return [_json_safe(item) for item in value]
    return str(value)


def _get_request_id(request: Request) -> str | None:
    request_id = getattr(request.state, "request_id", None)
    if isinstance(request_id, str) and request_id:
        return request_id
    return None


def _error_payload(*, detail: object, request_id: str | None) -> dict[str, object]:
    payload: dict[str, object] = {"detail": detail}
    if request_id is not None:
        payload["request_id"] = request_id
    return payload


def _error_response(
    request: Request,
    *,
    status_code: int,
    detail: object,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    request_id = _get_request_id(request)
    response_headers = dict(headers or {})
    if request_id is not None:
        response_headers[REQUEST_ID_HEADER] = request_id
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(_error_payload(detail=detail, request_id=request_id)),
        headers=response_headers,
    )


def _resolve_request_id(scope: Scope) -> str:
    for name, value in scope.get("headers", []):
        if name.decode("latin-1").lower() == REQUEST_ID_HEADER.lower():
            candidate = value.decode("latin-1").strip()
            if candidate:
                return candidate[:_REQUEST_ID_MAX_LENGTH]
    return uuid4().hex


class RequestContextMiddleware:
    """Assign a request id, echo it on responses, and log request timing."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = _resolve_request_id(scope)
        scope.setdefault("state", {})["request_id"] = request_id
        path = str(scope.get("path", ""))
        method = str(scope.get("method", ""))
        status_holder: dict[str, int] = {}
        started = perf_counter()

        async def send_with_request_id(message: Message) -> None:
            if message["type"] == "http.response.start":
                status_holder["status"] = int(message["status"])
                headers = list(message.get("headers", []))
                if not any(name.lower() == b"x-request-id" for name, _ in headers):
                    headers.append((b"x-request-id", request_id.encode("latin-1")))
                message["headers"] = headers
            await send(message)

        try:
            await self.app(scope, receive, send_with_request_id)
        finally:
            self._log_request(
                method=method,
                path=path,
                request_id=request_id,
                status_code=status_holder.get("status", 500),
                duration_ms=(perf_counter() - started) * 1000,
            )

    @staticmethod
    def _log_request(
        *,
        method: str,
        path: str,
        request_id: str,
        status_code: int,
        duration_ms: float,
    ) -> None:
        if path in _HEALTH_PATHS and not settings.request_log_include_health:
            return
        extra: dict[str, Any] = {
            "method": method,
            "path": path,
            "request_id": request_id,
            "status_code": status_code,
            "duration_ms": round(duration_ms, 2),
        }
        slow_ms = settings.request_log_slow_ms
        if slow_ms and duration_ms >= slow_ms:
            logger.warning(
                "http.request.slow",
                extra={**extra, "slow_threshold_ms": slow_ms},
            )
            return
        logger.info("http.request.complete", extra=extra)


async def _request_validation_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    if not isinstance(exc, RequestValidationError):
        raise TypeError("Expected RequestValidationError")
    return _error_response(
        request,
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=_json_safe(list(exc.errors())),
    )


async def _response_validation_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    if not isinstance(exc, ResponseValidationError):
        raise TypeError("Expected ResponseValidationError")
    logger.error(
        "http.response.validation_failed",
        extra={"request_id": _get_request_id(request), "errors": _json_safe(list(exc.errors()))},
    )
    return _error_response(
        request,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Internal Server Error",
    )


async def _http_exception_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    if not isinstance(exc, StarletteHTTPException):
        raise TypeError("Expected StarletteHTTPException")
    return _error_response(
        request,
        status_code=exc.status_code,
        detail=exc.detail,
        headers=getattr(exc, "headers", None),
    )


async def _domain_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    if not isinstance(exc, TaskShareError):
        raise TypeError("Expected TaskShareError")
    logger.info(
        "http.request.domain_error",
        extra={
            "request_id": _get_request_id(request),
            "code": exc.code,
            "status_code": exc.status_code,
        },
    )
    return _error_response(request, status_code=exc.status_code, detail=exc.to_detail())


async def _provider_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    if not isinstance(exc, DBAPIError):
        raise TypeError("Expected DBAPIError")
    logger.warning(
        "http.request.provider_error",
        extra={
            "request_id": _get_request_id(request),
            "error_type": exc.__class__.__name__,
        },
    )
    error = ProviderError()
    return _error_response(request, status_code=error.status_code, detail=error.to_detail())


async def _unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "http.request.unhandled_error",
        extra={"request_id": _get_request_id(request), "error_type": exc.__class__.__name__},
        exc_info=exc,
    )
    return _error_response(
        request,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Internal Server Error",
    )


def install_error_handling(app: FastAPI) -> None:
    """Register request-id middleware and exception handlers on an app."""
    app.add_middleware(RequestContextMiddleware)
    app.add_exception_handler(RequestValidationError, _request_validation_exception_handler)
    app.add_exception_handler(ResponseValidationError, _response_validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, _http_exception_exception_handler)
    app.add_exception_handler(TaskShareError, _domain_exception_handler)
    app.add_exception_handler(OperationalError, _provider_exception_handler)
    app.add_exception_handler(DBAPIError, _provider_exception_handler)
    app.add_exception_handler(Exception, _unhandled_exception_handler)
