"""Caller authentication for Clerk and local-token auth modes.

Authentication establishes *who* the caller is. The first time an identity is
seen its profile is provisioned through `handle_identity_created`; everything
about *what* the caller may touch is decided by `taskshare.services.policy`.
"""

from __future__ import annotations

from dataclasses import dataclass
from hmac import compare_digest
from typing import TYPE_CHECKING, Literal

import httpx
from clerk_backend_api import Clerk
from clerk_backend_api.models.clerkerrors import ClerkErrors
from clerk_backend_api.models.sdkerror import SDKError
from clerk_backend_api.security.types import AuthenticateRequestOptions, AuthStatus, RequestState
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ValidationError
from starlette.concurrency import run_in_threadpool

from taskshare.core.auth_mode import AuthMode
from taskshare.core.config import settings
from taskshare.core.logging import get_logger
from taskshare.db.session import get_session
from taskshare.schemas.profiles import IdentityCreated
from taskshare.services.policy import Caller
from taskshare.services.profiles import get_profile, handle_identity_created

if TYPE_CHECKING:
    from clerk_backend_api.models.user import User as ClerkUser
    from sqlmodel.ext.asyncio.session import AsyncSession

    from taskshare.models.profiles import Profile

logger = get_logger(__name__)
security = HTTPBearer(auto_error=False)
SECURITY_DEP = Depends(security)
SESSION_DEP = Depends(get_session)


class ClerkTokenPayload(BaseModel):
    """JWT claims payload shape required from Clerk tokens."""

    sub: str


@dataclass
class AuthContext:
    """Authenticated caller context resolved from inbound auth headers."""

    actor_type: Literal["user"]
    profile: Profile | None = None

    @property
    def caller(self) -> Caller | None:
        if self.profile is None:
            return None
        return Caller(id=self.profile.id, email=self.profile.email)


def _extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    value = authorization.strip()
    if not value:
        return None
    if not value.lower().startswith("bearer "):
        return None
    token = value.split(" ", maxsplit=1)[1].strip()
    return token or None


def _non_empty_str(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    cleaned = value.strip()
    return cleaned or None


def _normalize_email(value: object) -> str | None:
    text = _non_empty_str(value)
    if text is None:
        return None
    return text.lower()


def _extract_claim_email(claims: dict[str, object]) -> str | None:
    for key in ("email", "email_address", "primary_email_address"):
        email = _normalize_email(claims.get(key))
        if email:
            return email

    primary_email_id = _non_empty_str(claims.get("primary_email_address_id"))
    email_addresses = claims.get("email_addresses")
    if not isinstance(email_addresses, list):
        return None

    fallback_email: str | None = None
    for item in email_addresses:
        if isinstance(item, str):
            normalized = _normalize_email(item)
            if normalized and fallback_email is None:
                fallback_email = normalized
            continue
        if not isinstance(item, dict):
            continue
        candidate = _normalize_email(item.get("email_address") or item.get("email"))
        if not candidate:
            continue
        candidate_id = _non_empty_str(item.get("id"))
        if primary_email_id and candidate_id == primary_email_id:
            return candidate
        if fallback_email is None:
            fallback_email = candidate
    return fallback_email


def _extract_claim_name(claims: dict[str, object]) -> str | None:
    for key in ("full_name", "name"):
        text = _non_empty_str(claims.get(key))
        if text:
            return text

    first = _non_empty_str(claims.get("given_name")) or _non_empty_str(claims.get("first_name"))
    last = _non_empty_str(claims.get("family_name")) or _non_empty_str(claims.get("last_name"))
    parts = [part for part in (first, last) if part]
    if not parts:
        return None
    return " ".join(parts)


def _extract_claim_avatar(claims: dict[str, object]) -> str | None:
    for key in ("avatar_url", "picture", "image_url"):
        text = _non_empty_str(claims.get(key))
        if text:
            return text
    return None


def _extract_clerk_profile(profile: ClerkUser | None) -> IdentityCreated | None:
    if profile is None:
        return None

    primary_email_id = _non_empty_str(getattr(profile, "primary_email_address_id", None))
    profile_email: str | None = None
    fallback_email: str | None = None
    for item in getattr(profile, "email_addresses", None) or []:
        candidate = _normalize_email(getattr(item, "email_address", None))
        if not candidate:
            continue
        candidate_id = _non_empty_str(getattr(item, "id", None))
        if primary_email_id and candidate_id == primary_email_id:
            profile_email = candidate
            break
        if fallback_email is None:
            fallback_email = candidate

    first = _non_empty_str(getattr(profile, "first_name", None))
    last = _non_empty_str(getattr(profile, "last_name", None))
    name_parts = [part for part in (first, last) if part]
    return IdentityCreated(
        id=str(getattr(profile, "id", "") or ""),
        email=profile_email or fallback_email,
        full_name=" ".join(name_parts) if name_parts else _non_empty_str(getattr(profile, "username", None)),
        avatar_url=_non_empty_str(getattr(profile, "image_url", None)),
    )


def _normalize_clerk_server_url(raw: str) -> str | None:
    server_url = raw.strip().rstrip("/")
    if not server_url:
        return None
    if not server_url.endswith("/v1"):
        server_url = f"{server_url}/v1"
    return server_url


def _make_authenticate_request_options() -> AuthenticateRequestOptions:
    # Follow the clerk-backend-api documented flow: authenticate_request() with a secret key.
    return AuthenticateRequestOptions(
        secret_key=settings.clerk_secret_key.strip(),
        clock_skew_in_ms=int(settings.clerk_leeway * 1000),
        accepts_token=["session_token"],
    )


async def _authenticate_clerk_request(request: Request) -> RequestState:
    # The SDK docs use httpx.Request as the request object; build one from the ASGI request.
    httpx_request = httpx.Request(
        request.method,
        str(request.url),
        headers=dict(request.headers),
    )
    options = _make_authenticate_request_options()
    sdk = Clerk(bearer_auth=options.secret_key or "")
    return await run_in_threadpool(sdk.authenticate_request, httpx_request, options)


async def _fetch_clerk_identity(clerk_user_id: str) -> IdentityCreated | None:
    secret = settings.clerk_secret_key.strip()
    server_url = _normalize_clerk_server_url(settings.clerk_api_url or "")
    clerk_user_id_log = clerk_user_id[-6:] if clerk_user_id else ""

    try:
        async with Clerk(
            bearer_auth=secret,
            server_url=server_url,
            timeout_ms=5000,
        ) as clerk:
            profile = await clerk.users.get_async(user_id=clerk_user_id)
        return _extract_clerk_profile(profile)
    except ClerkErrors as exc:
        logger.warning(
            "auth.clerk.profile.fetch_failed clerk_user_id=%s reason=clerk_errors error_type=%s",
            clerk_user_id_log,
            exc.__class__.__name__,
        )
    except SDKError as exc:
        logger.warning(
            "auth.clerk.profile.fetch_failed clerk_user_id=%s status=%s reason=sdk_error "
            "server_url=%s",
            clerk_user_id_log,
            exc.status_code,
            server_url,
        )
    except httpx.TimeoutException as exc:
        logger.warning(
            "auth.clerk.profile.fetch_failed clerk_user_id=%s reason=timeout "
            "server_url=%s error=%s",
            clerk_user_id_log,
            server_url,
            str(exc) or exc.__class__.__name__,
        )
    return None


async def _get_or_provision_profile(
    session: AsyncSession,
    *,
    clerk_user_id: str,
    claims: dict[str, object],
) -> Profile:
    existing = await get_profile(session, clerk_user_id)
    if existing is not None:
        return existing

    identity = IdentityCreated(
        id=clerk_user_id,
        email=_extract_claim_email(claims),
        full_name=_extract_claim_name(claims),
        avatar_url=_extract_claim_avatar(claims),
    )
    # Session tokens often omit profile claims; ask Clerk once at provisioning time.
    if identity.email is None or identity.full_name is None:
        fetched = await _fetch_clerk_identity(clerk_user_id)
        if fetched is not None:
            identity = IdentityCreated(
                id=clerk_user_id,
                email=identity.email or fetched.email,
                full_name=identity.full_name or fetched.full_name,
                avatar_url=identity.avatar_url or fetched.avatar_url,
            )
    if identity.email is None:
        logger.warning(
            "auth.profile.missing_email clerk_user_id=%s",
            clerk_user_id[-6:],
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Identity has no email address",
        )
    return await handle_identity_created(session, identity)


async def _get_or_create_local_profile(session: AsyncSession) -> Profile:
    return await handle_identity_created(
        session,
        IdentityCreated(
            id=settings.local_auth_user_id,
            email=settings.local_auth_email,
            full_name=settings.local_auth_name,
        ),
    )


async def _resolve_local_auth_context(
    *,
    request: Request,
    session: AsyncSession,
) -> AuthContext:
    token = _extract_bearer_token(request.headers.get("Authorization"))
    if token is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
    expected = settings.local_auth_token.strip()
    if not expected or not compare_digest(token, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
    profile = await _get_or_create_local_profile(session)
    return AuthContext(actor_type="user", profile=profile)


def _parse_subject(claims: dict[str, object]) -> str | None:
    payload = ClerkTokenPayload.model_validate(claims)
    return payload.sub


async def get_auth_context(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = SECURITY_DEP,
    session: AsyncSession = SESSION_DEP,
) -> AuthContext:
    """Resolve required authenticated caller context for the configured auth mode."""
    if settings.auth_mode == AuthMode.LOCAL:
        return await _resolve_local_auth_context(request=request, session=session)

    request_state = await _authenticate_clerk_request(request)
    if request_state.status != AuthStatus.SIGNED_IN or not isinstance(request_state.payload, dict):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
    claims: dict[str, object] = {str(k): v for k, v in request_state.payload.items()}
    try:
        clerk_user_id = _parse_subject(claims)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED) from exc

    if not clerk_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
    profile = await _get_or_provision_profile(
        session,
        clerk_user_id=clerk_user_id,
        claims=claims,
    )
    return AuthContext(actor_type="user", profile=profile)
