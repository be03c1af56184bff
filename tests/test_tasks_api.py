# ruff: noqa: INP001
"""HTTP integration tests for task, sharing, profile, and stream endpoints."""

from __future__ import annotations

import json
from datetime import timedelta
from types import SimpleNamespace

import pytest
import pytest_asyncio
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from httpx import ASGITransport, AsyncClient
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from taskshare.api import tasks as tasks_api
from taskshare.api.auth import router as auth_router
from taskshare.api.profiles import router as profiles_router
from taskshare.api.tasks import router as tasks_router
from taskshare.core import auth as auth_module
from taskshare.core.auth import AuthContext, get_auth_context
from taskshare.core.error_handling import install_error_handling
from taskshare.core.time import utctoday
from taskshare.db.session import create_engine, get_session
from taskshare.models.profiles import Profile
from taskshare.schemas.common import OkResponse
from taskshare.schemas.tasks import TaskCreate, TaskShareCreate
from taskshare.services import tasks as task_service
from taskshare.services.change_feed import InMemoryChangeFeed
from taskshare.services.policy import Caller
from taskshare.services.workspace import visible_task_cache

USERS = {
    "alice": ("user_alice", "alice@example.com", "Alice"),
    "bob": ("user_bob", "bob@example.com", "Bob"),
    "carol": ("user_carol", "carol@example.com", "Carol"),
}


def _build_test_app(session_maker: async_sessionmaker[AsyncSession]) -> FastAPI:
    app = FastAPI()
    install_error_handling(app)
    api_v1 = APIRouter(prefix="/api/v1")
    api_v1.include_router(auth_router)
    api_v1.include_router(profiles_router)
    api_v1.include_router(tasks_router)
    app.include_router(api_v1)

    async def _override_get_session() -> AsyncSession:
        async with session_maker() as session:
            yield session

    async def _override_get_auth_context(
        request: Request,
        session: AsyncSession = Depends(get_session),
    ) -> AuthContext:
        user = request.headers.get("X-Test-User")
        if user not in USERS:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
        profile = await session.get(Profile, USERS[user][0])
        return AuthContext(actor_type="user", profile=profile)

    app.dependency_overrides[get_session] = _override_get_session
    app.dependency_overrides[auth_module.get_session] = _override_get_session
    app.dependency_overrides[get_auth_context] = _override_get_auth_context
    return app


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'api.db'}")
    async with engine.connect() as conn, conn.begin():
        await conn.run_sync(SQLModel.metadata.create_all)
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with maker() as session:
        for profile_id, email, name in USERS.values():
            session.add(Profile(id=profile_id, email=email, full_name=name))
        await session.commit()
    try:
        yield maker
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def client(session_maker, change_feed: InMemoryChangeFeed):
    await visible_task_cache.start(change_feed)
    try:
        async with AsyncClient(
            transport=ASGITransport(app=_build_test_app(session_maker)),
            base_url="http://testserver",
        ) as client:
            yield client
    finally:
        await visible_task_cache.stop()


def _as(user: str) -> dict[str, str]:
    return {"X-Test-User": user}


@pytest.mark.asyncio
async def test_unauthenticated_requests_are_rejected(client: AsyncClient) -> None:
    assert (await client.get("/api/v1/tasks")).status_code == 401
    assert (await client.post("/api/v1/tasks", json={"title": "x"})).status_code == 401


@pytest.mark.asyncio
async def test_share_flow_over_http(client: AsyncClient) -> None:
    created = await client.post(
        "/api/v1/tasks",
        json={"title": "Write report", "priority": "high", "status": "pending"},
        headers=_as("alice"),
    )
    assert created.status_code == 200
    task = created.json()
    assert task["is_owner"] is True
    assert task["owner"]["email"] == "alice@example.com"
    task_id = task["id"]

    bob_before = await client.get("/api/v1/tasks", headers=_as("bob"))
    assert bob_before.json() == []

    shared = await client.post(
        f"/api/v1/tasks/{task_id}/shares",
        json={"email": " Bob@Example.com", "permission": "view"},
        headers=_as("alice"),
    )
    assert shared.status_code == 200
    assert shared.json()["recipient"]["full_name"] == "Bob"

    bob_view = await client.get("/api/v1/tasks", headers=_as("bob"))
    assert [t["id"] for t in bob_view.json()] == [task_id]
    assert bob_view.json()[0]["can_edit"] is False

    denied = await client.patch(
        f"/api/v1/tasks/{task_id}",
        json={"title": "Hijacked"},
        headers=_as("bob"),
    )
    assert denied.status_code == 403
    assert denied.json()["detail"]["code"] == "forbidden"
    assert isinstance(denied.json()["request_id"], str)

    await client.post(
        f"/api/v1/tasks/{task_id}/shares",
        json={"email": "bob@example.com", "permission": "edit"},
        headers=_as("alice"),
    )
    allowed = await client.patch(
        f"/api/v1/tasks/{task_id}",
        json={"status": "completed"},
        headers=_as("bob"),
    )
    assert allowed.status_code == 200
    assert allowed.json()["status"] == "completed"
    assert allowed.json()["title"] == "Write report"

    alice_view = await client.get(f"/api/v1/tasks/{task_id}", headers=_as("alice"))
    assert [s["permission"] for s in alice_view.json()["shares"]] == ["edit"]

    deleted = await client.delete(f"/api/v1/tasks/{task_id}", headers=_as("alice"))
    assert deleted.json() == {"ok": True}
    assert (await client.get("/api/v1/tasks", headers=_as("alice"))).json() == []
    assert (await client.get("/api/v1/tasks", headers=_as("bob"))).json() == []


@pytest.mark.asyncio
async def test_failed_write_through_refresh_does_not_leave_stale_cache(
    client: AsyncClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    assert (await client.get("/api/v1/tasks", headers=_as("alice"))).json() == []
    assert visible_task_cache.get("user_alice") == []
    original = task_service.list_visible_tasks

    async def _storage_down(*_args, **_kwargs):
        raise OperationalError("SELECT tasks", {}, Exception("database is locked"))

    monkeypatch.setattr(task_service, "list_visible_tasks", _storage_down)
    failed = await client.post("/api/v1/tasks", json={"title": "Committed"}, headers=_as("alice"))
    assert failed.status_code == 503
    assert failed.json()["detail"]["code"] == "provider_unavailable"

    monkeypatch.setattr(task_service, "list_visible_tasks", original)
    listed = await client.get("/api/v1/tasks", headers=_as("alice"))

    assert [task["title"] for task in listed.json()] == ["Committed"]
    assert [task.title for task in visible_task_cache.get("user_alice") or []] == ["Committed"]


@pytest.mark.asyncio
async def test_hidden_task_reads_as_not_found(client: AsyncClient) -> None:
    created = await client.post("/api/v1/tasks", json={"title": "Secret"}, headers=_as("alice"))
    task_id = created.json()["id"]

    hidden = await client.get(f"/api/v1/tasks/{task_id}", headers=_as("carol"))

    assert hidden.status_code == 404
    assert hidden.json()["detail"] == {"code": "not_found", "message": "Task not found"}


@pytest.mark.asyncio
async def test_share_errors_map_to_status_codes(client: AsyncClient) -> None:
    created = await client.post("/api/v1/tasks", json={"title": "Plan"}, headers=_as("alice"))
    task_id = created.json()["id"]
    url = f"/api/v1/tasks/{task_id}/shares"

    unknown = await client.post(url, json={"email": "nobody@nowhere.test"}, headers=_as("alice"))
    malformed = await client.post(url, json={"email": "nope"}, headers=_as("alice"))
    not_owner = await client.post(url, json={"email": "carol@example.com"}, headers=_as("bob"))

    assert unknown.status_code == 404
    assert unknown.json()["detail"]["message"] == "User not found"
    assert malformed.status_code == 422
    assert not_owner.status_code == 403
    task = await client.get(f"/api/v1/tasks/{task_id}", headers=_as("alice"))
    assert task.json()["shares"] == []


@pytest.mark.asyncio
async def test_create_validation_errors(client: AsyncClient) -> None:
    blank = await client.post("/api/v1/tasks", json={"title": "  "}, headers=_as("alice"))
    bad_priority = await client.post(
        "/api/v1/tasks",
        json={"title": "x", "priority": "urgent"},
        headers=_as("alice"),
    )
    bad_date = await client.post(
        "/api/v1/tasks",
        json={"title": "x", "due_date": "next tuesday"},
        headers=_as("alice"),
    )

    assert blank.status_code == 422
    assert blank.json()["detail"]["code"] == "validation_error"
    assert bad_priority.status_code == 422
    assert bad_date.status_code == 422
    assert (await client.get("/api/v1/tasks", headers=_as("alice"))).json() == []


@pytest.mark.asyncio
async def test_revoke_share_endpoint(client: AsyncClient) -> None:
    created = await client.post("/api/v1/tasks", json={"title": "Team"}, headers=_as("alice"))
    task_id = created.json()["id"]
    await client.post(
        f"/api/v1/tasks/{task_id}/shares",
        json={"email": "bob@example.com"},
        headers=_as("alice"),
    )

    forbidden = await client.delete(
        f"/api/v1/tasks/{task_id}/shares/user_bob",
        headers=_as("bob"),
    )
    revoked = await client.delete(
        f"/api/v1/tasks/{task_id}/shares/user_bob",
        headers=_as("alice"),
    )

    assert forbidden.status_code == 403
    assert revoked.json() == {"ok": True}
    assert (await client.get("/api/v1/tasks", headers=_as("bob"))).json() == []


@pytest.mark.asyncio
async def test_list_filters_and_stats(client: AsyncClient) -> None:
    today = utctoday()
    payloads = [
        {"title": "Due today", "due_date": today.isoformat(), "priority": "high"},
        {"title": "Late", "due_date": (today - timedelta(days=3)).isoformat()},
        {"title": "Later", "due_date": (today + timedelta(days=3)).isoformat(), "status": "in-progress"},
        {"title": "Finished", "due_date": (today - timedelta(days=9)).isoformat(), "status": "completed"},
    ]
    for payload in payloads:
        await client.post("/api/v1/tasks", json=payload, headers=_as("alice"))

    overdue = await client.get("/api/v1/tasks", params={"due": "overdue"}, headers=_as("alice"))
    high = await client.get("/api/v1/tasks", params={"priority": "high"}, headers=_as("alice"))
    search = await client.get("/api/v1/tasks", params={"q": "LATE"}, headers=_as("alice"))
    stats = await client.get("/api/v1/tasks/stats", headers=_as("alice"))

    assert [t["title"] for t in overdue.json()] == ["Late"]
    assert [t["title"] for t in high.json()] == ["Due today"]
    assert [t["title"] for t in search.json()] == ["Late", "Later"]
    assert stats.json() == {
        "total": 4,
        "completed": 1,
        "in_progress": 1,
        "pending": 2,
        "overdue": 1,
    }
    bad_window = await client.get("/api/v1/tasks", params={"due": "soon"}, headers=_as("alice"))
    assert bad_window.status_code == 422


@pytest.mark.asyncio
async def test_profile_endpoints(client: AsyncClient) -> None:
    me = await client.get("/api/v1/profiles/me", headers=_as("bob"))
    assert me.json()["email"] == "bob@example.com"

    updated = await client.patch(
        "/api/v1/profiles/me",
        json={"full_name": "Robert"},
        headers=_as("bob"),
    )
    assert updated.json()["full_name"] == "Robert"

    directory = await client.get("/api/v1/profiles", params={"email": "c"}, headers=_as("bob"))
    assert [p["email"] for p in directory.json()] == ["carol@example.com"]

    bootstrap = await client.post("/api/v1/auth/bootstrap", headers=_as("alice"))
    assert bootstrap.json()["id"] == "user_alice"


class _ConnectedRequest:
    async def is_disconnected(self) -> bool:
        return False


@pytest.mark.asyncio
async def test_stream_sends_snapshot_then_changes(
    session_maker,
    change_feed: InMemoryChangeFeed,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(tasks_api, "async_session_maker", session_maker)
    bob = Caller(id="user_bob", email="bob@example.com")
    alice = Caller(id="user_alice", email="alice@example.com")

    response = await tasks_api.stream_tasks(request=_ConnectedRequest(), caller=bob)  # type: ignore[arg-type]
    events = response.body_iterator

    first = await events.__anext__()
    assert first["event"] == "tasks"
    assert json.loads(first["data"]) == {"tasks": []}
    assert change_feed.subscriber_count == 1

    async with session_maker() as session:
        task = await task_service.create_task(session, alice, TaskCreate(title="Shared"))
    second = json.loads((await events.__anext__())["data"])
    assert second["tasks"] == []
    assert second["change"]["table"] == "tasks"

    async with session_maker() as session:
        await task_service.share_task(session, alice, task.id, "bob@example.com")
    third = json.loads((await events.__anext__())["data"])
    assert [t["id"] for t in third["tasks"]] == [str(task.id)]
    assert third["change"] == {
        "table": "task_shares",
        "event_type": "INSERT",
        "row_id": third["change"]["row_id"],
    }

    await events.aclose()
    assert change_feed.subscriber_count == 0


@pytest.mark.asyncio
async def test_local_auth_provisions_profile_once(
    session_maker,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(auth_module.settings, "local_auth_token", "integration-token")
    monkeypatch.setattr(auth_module.settings, "local_auth_user_id", "local-user")
    monkeypatch.setattr(auth_module.settings, "local_auth_email", "Local@Example.com")
    monkeypatch.setattr(auth_module.settings, "local_auth_name", "Local User")
    app = _build_test_app(session_maker)
    app.dependency_overrides.pop(get_auth_context)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://testserver",
    ) as client:
        missing = await client.post("/api/v1/auth/bootstrap")
        invalid = await client.post(
            "/api/v1/auth/bootstrap",
            headers={"Authorization": "Bearer wrong-token"},
        )
        first = await client.post(
            "/api/v1/auth/bootstrap",
            headers={"Authorization": "Bearer integration-token"},
        )
        second = await client.get(
            "/api/v1/profiles/me",
            headers={"Authorization": "Bearer integration-token"},
        )

    assert missing.status_code == 401
    assert invalid.status_code == 401
    assert first.status_code == 200
    assert first.json()["id"] == "local-user"
    assert first.json()["email"] == "local@example.com"
    assert second.json()["created_at"] == first.json()["created_at"]


def test_stream_payload_shape() -> None:
    assert json.loads(tasks_api._stream_payload([], None)) == {"tasks": []}
    event = SimpleNamespace(table="tasks", event_type="DELETE", row_id="t1")
    assert json.loads(tasks_api._stream_payload([], event))["change"] == {  # type: ignore[arg-type]
        "table": "tasks",
        "event_type": "DELETE",
        "row_id": "t1",
    }


def test_request_schemas_publish_field_examples() -> None:
    create_schema = TaskCreate.model_json_schema()
    share_schema = TaskShareCreate.model_json_schema()

    assert create_schema["properties"]["title"]["examples"] == ["Write report"]
    assert share_schema["properties"]["permission"]["examples"] == ["view", "edit"]
    assert OkResponse.model_json_schema()["properties"]["ok"]["examples"] == [True]
