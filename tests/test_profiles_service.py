# ruff: noqa: INP001
"""Profile provisioning, lookup, and self-service update tests."""

from __future__ import annotations

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import SQLModel, select
from sqlmodel.ext.asyncio.session import AsyncSession

from taskshare.core.errors import AuthorizationError, NotFoundError, ValidationError
from taskshare.db.session import create_engine
from taskshare.models.profiles import Profile
from taskshare.schemas.profiles import IdentityCreated, ProfileUpdate
from taskshare.services import profiles as profile_service
from taskshare.services.policy import Caller


@pytest_asyncio.fixture
async def session():
    engine = create_engine("sqlite+aiosqlite:///:memory:")
    async with engine.connect() as conn, conn.begin():
        await conn.run_sync(SQLModel.metadata.create_all)
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    try:
        async with maker() as session:
            yield session
    finally:
        await engine.dispose()


async def _profile_count(session: AsyncSession) -> int:
    return len(list(await session.exec(select(Profile))))


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("  Bob@Example.COM ", "bob@example.com"),
        ("a@b.co", "a@b.co"),
    ],
)
def test_validate_email_normalizes(raw: str, expected: str) -> None:
    assert profile_service.validate_email(raw) == expected


@pytest.mark.parametrize("raw", [None, "", "   ", "no-at-sign", "two@@example.com", "a b@c.d", "x@nodot"])
def test_validate_email_rejects_malformed(raw: str | None) -> None:
    with pytest.raises(ValidationError):
        profile_service.validate_email(raw)


@pytest.mark.asyncio
async def test_identity_created_provisions_exactly_one_profile(session: AsyncSession) -> None:
    identity = IdentityCreated(
        id="user_1",
        email=" Alex@Example.com ",
        full_name=" Alex Chen ",
        avatar_url="https://img.example.com/a.png",
    )

    first = await profile_service.handle_identity_created(session, identity)
    second = await profile_service.handle_identity_created(
        session,
        IdentityCreated(id="user_1", email="changed@example.com", full_name="Other"),
    )

    assert first.email == "alex@example.com"
    assert first.full_name == "Alex Chen"
    assert first.avatar_url == "https://img.example.com/a.png"
    assert second.id == first.id
    assert second.email == "alex@example.com"
    assert await _profile_count(session) == 1


@pytest.mark.asyncio
async def test_identity_created_requires_email(session: AsyncSession) -> None:
    with pytest.raises(ValidationError):
        await profile_service.handle_identity_created(session, IdentityCreated(id="user_2"))
    assert await _profile_count(session) == 0


@pytest.mark.asyncio
async def test_identity_with_taken_email_is_rejected(session: AsyncSession) -> None:
    await profile_service.handle_identity_created(
        session,
        IdentityCreated(id="user_1", email="shared@example.com"),
    )

    with pytest.raises(ValidationError, match="already registered"):
        await profile_service.handle_identity_created(
            session,
            IdentityCreated(id="user_2", email="SHARED@example.com"),
        )
    assert await _profile_count(session) == 1


@pytest.mark.asyncio
async def test_lookup_by_email_is_case_insensitive(session: AsyncSession) -> None:
    await profile_service.handle_identity_created(
        session,
        IdentityCreated(id="user_1", email="bob@example.com"),
    )

    found = await profile_service.get_profile_by_email(session, "  BOB@example.com")

    assert found is not None
    assert found.id == "user_1"
    assert await profile_service.get_profile_by_email(session, "") is None


@pytest.mark.asyncio
async def test_list_profiles_filters_by_prefix_and_limit(session: AsyncSession) -> None:
    for index, email in enumerate(["bob@example.com", "alice@example.com", "bobby@example.com"]):
        await profile_service.handle_identity_created(
            session,
            IdentityCreated(id=f"user_{index}", email=email),
        )

    everyone = await profile_service.list_profiles(session)
    bobs = await profile_service.list_profiles(session, email_prefix="BOB")
    first_only = await profile_service.list_profiles(session, limit=1)

    assert [p.email for p in everyone] == [
        "alice@example.com",
        "bob@example.com",
        "bobby@example.com",
    ]
    assert [p.email for p in bobs] == ["bob@example.com", "bobby@example.com"]
    assert [p.email for p in first_only] == ["alice@example.com"]


@pytest.mark.asyncio
async def test_update_profile_is_self_only(session: AsyncSession) -> None:
    await profile_service.handle_identity_created(
        session,
        IdentityCreated(id="user_1", email="one@example.com", full_name="One"),
    )
    await profile_service.handle_identity_created(
        session,
        IdentityCreated(id="user_2", email="two@example.com"),
    )
    me = Caller(id="user_1", email="one@example.com")

    updated = await profile_service.update_profile(
        session,
        me,
        "user_1",
        ProfileUpdate(avatar_url=" https://img.example.com/1.png "),
    )
    assert updated.avatar_url == "https://img.example.com/1.png"
    assert updated.full_name == "One"

    with pytest.raises(AuthorizationError):
        await profile_service.update_profile(session, me, "user_2", ProfileUpdate(full_name="x"))
    with pytest.raises(NotFoundError):
        await profile_service.update_profile(session, me, "missing", ProfileUpdate(full_name="x"))
