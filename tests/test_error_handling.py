# ruff: noqa

from __future__ import annotations

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import BaseModel, Field
from sqlalchemy.exc import OperationalError
from starlette.requests import Request

from taskshare.core import error_handling
from taskshare.core.error_handling import (
    REQUEST_ID_HEADER,
    _domain_exception_handler,
    _error_payload,
    _get_request_id,
    _http_exception_exception_handler,
    _request_validation_exception_handler,
    install_error_handling,
)
from taskshare.core.errors import (
    AuthorizationError,
    NotFoundError,
    ProviderError,
    ValidationError,
)


def _app_raising(exc: Exception) -> TestClient:
    app = FastAPI()
    install_error_handling(app)

    @app.get("/fail")
    def fail() -> None:
        raise exc

    return TestClient(app, raise_server_exceptions=False)


def _assert_request_id(resp) -> str:
    body = resp.json()
    assert isinstance(body.get("request_id"), str) and body["request_id"]
    assert resp.headers.get(REQUEST_ID_HEADER) == body["request_id"]
    return body["request_id"]


@pytest.mark.parametrize(
    ("exc", "status_code", "code"),
    [
        (ValidationError("Title is required"), 422, "validation_error"),
        (AuthorizationError("Not allowed to update this task"), 403, "forbidden"),
        (NotFoundError("Task not found"), 404, "not_found"),
        (ProviderError(), 503, "provider_unavailable"),
    ],
)
def test_domain_errors_map_to_status_and_code(exc, status_code, code):
    resp = _app_raising(exc).get("/fail")

    assert resp.status_code == status_code
    assert resp.json()["detail"] == {"code": code, "message": exc.message}
    _assert_request_id(resp)


def test_storage_outage_surfaces_as_provider_error():
    resp = _app_raising(OperationalError("SELECT 1", {}, Exception("connection refused"))).get(
        "/fail"
    )

    assert resp.status_code == 503
    assert resp.json()["detail"]["code"] == "provider_unavailable"
    _assert_request_id(resp)


def test_request_validation_error_includes_request_id():
    app = FastAPI()
    install_error_handling(app)

    @app.get("/needs-int")
    def needs_int(limit: int) -> dict[str, int]:
        return {"limit": limit}

    resp = TestClient(app).get("/needs-int?limit=abc")

    assert resp.status_code == 422
    assert isinstance(resp.json().get("detail"), list)
    _assert_request_id(resp)


def test_request_validation_error_handles_bytes_input_without_500():
    class Payload(BaseModel):
        title: str

    app = FastAPI()
    install_error_handling(app)

    @app.post("/tasks")
    def create(payload: Payload) -> dict[str, str]:
        return {"title": payload.title}

    resp = TestClient(app, raise_server_exceptions=False).post(
        "/tasks",
        content=b"plain-text-body",
        headers={"content-type": "text/plain"},
    )

    assert resp.status_code == 422
    _assert_request_id(resp)


def test_http_exception_keeps_detail():
    resp = _app_raising(HTTPException(status_code=401, detail="nope")).get("/fail")

    assert resp.status_code == 401
    assert resp.json()["detail"] == "nope"
    _assert_request_id(resp)


def test_unhandled_exception_returns_500_with_request_id():
    resp = _app_raising(RuntimeError("boom")).get("/fail")

    assert resp.status_code == 500
    assert resp.json()["detail"] == "Internal Server Error"
    _assert_request_id(resp)


def test_response_validation_error_returns_500():
    class Out(BaseModel):
        title: str = Field(min_length=1)

    app = FastAPI()
    install_error_handling(app)

    @app.get("/bad", response_model=Out)
    def bad() -> dict[str, str]:
        return {"title": ""}

    resp = TestClient(app, raise_server_exceptions=False).get("/bad")

    assert resp.status_code == 500
    assert resp.json()["detail"] == "Internal Server Error"


def test_client_provided_request_id_is_trimmed_and_echoed():
    resp = _app_raising(NotFoundError()).get("/fail", headers={REQUEST_ID_HEADER: "  req-123  "})

    assert resp.json()["request_id"] == "req-123"
    assert resp.headers.get(REQUEST_ID_HEADER) == "req-123"


def test_slow_request_emits_slow_log(monkeypatch: pytest.MonkeyPatch) -> None:
    warnings: list[tuple[str, dict[str, object]]] = []

    def _fake_warning(message: str, *args: object, **kwargs: object) -> None:
        extra = kwargs.get("extra")
        warnings.append((message, extra if isinstance(extra, dict) else {}))

    perf_ticks = iter((100.0, 100.2))

    monkeypatch.setattr(error_handling.settings, "request_log_slow_ms", 1)
    monkeypatch.setattr(error_handling, "perf_counter", lambda: next(perf_ticks))
    monkeypatch.setattr(error_handling.logger, "warning", _fake_warning)

    app = FastAPI()
    install_error_handling(app)

    @app.get("/slow")
    def slow() -> dict[str, str]:
        return {"ok": "1"}

    resp = TestClient(app).get("/slow")

    assert resp.status_code == 200
    assert any(
        message == "http.request.slow" and extra.get("slow_threshold_ms") == 1
        for message, extra in warnings
    )


def test_health_route_skips_request_logs_when_disabled(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    infos: list[str] = []
    monkeypatch.setattr(error_handling.settings, "request_log_include_health", False)
    monkeypatch.setattr(
        error_handling.logger,
        "info",
        lambda message, *args, **kwargs: infos.append(message),
    )

    app = FastAPI()
    install_error_handling(app)

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    resp = TestClient(app).get("/healthz")

    assert resp.status_code == 200
    assert isinstance(resp.headers.get(REQUEST_ID_HEADER), str)
    assert "http.request.complete" not in infos


def test_get_request_id_returns_none_for_missing_or_invalid_state() -> None:
    for state in ({}, {"request_id": 123}, {"request_id": ""}):
        req = Request({"type": "http", "headers": [], "state": state})
        assert _get_request_id(req) is None


def test_error_payload_omits_request_id_when_none() -> None:
    assert _error_payload(detail="x", request_id=None) == {"detail": "x"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("handler", "expected"),
    [
        (_request_validation_exception_handler, "Expected RequestValidationError"),
        (_http_exception_exception_handler, "Expected StarletteHTTPException"),
        (_domain_exception_handler, "Expected TaskShareError"),
    ],
)
async def test_handlers_reject_wrong_exception_type(handler, expected) -> None:
    req = Request({"type": "http", "headers": [], "state": {}})
    with pytest.raises(TypeError, match=expected):
        await handler(req, Exception("x"))


def test_json_safe_covers_bytes_and_fallback_str() -> None:
    assert error_handling._json_safe(b"\xff") == "\ufffd"
    assert error_handling._json_safe(memoryview(b"\xff")) == "\ufffd"

    class Weird:
        def __str__(self) -> str:
            return "weird"

    assert error_handling._json_safe({"k": (Weird(),)}) == {"k": ["weird"]}
