"""Profile lookup, self-service updates, and identity provisioning."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError
from sqlmodel import col

from taskshare.core.errors import NotFoundError, ValidationError
from taskshare.core.logging import get_logger
from taskshare.core.time import utcnow
from taskshare.models.profiles import Profile
from taskshare.services.policy import Caller, Entity, Operation, require

if TYPE_CHECKING:
    from sqlmodel.ext.asyncio.session import AsyncSession

    from taskshare.schemas.profiles import IdentityCreated, ProfileUpdate

logger = get_logger(__name__)

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PROFILE_SEARCH_LIMIT = 50


def normalize_email(value: str | None) -> str | None:
    """Trim and lower-case an email; blank input becomes `None`."""
    if value is None:
        return None
    cleaned = value.strip().lower()
    return cleaned or None


def validate_email(value: str | None) -> str:
    """Return the normalized email or raise `ValidationError`."""
    email = normalize_email(value)
    if email is None:
        raise ValidationError("Email address is required")
    if not _EMAIL_RE.match(email):
        raise ValidationError("Email address is not valid")
    return email


def _clean_optional(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = value.strip()
    return cleaned or None


async def get_profile(session: AsyncSession, profile_id: str) -> Profile | None:
    return await Profile.objects.by_id(profile_id).first(session)


async def get_profile_by_email(session: AsyncSession, email: str) -> Profile | None:
    normalized = normalize_email(email)
    if normalized is None:
        return None
    return await Profile.objects.filter_by(email=normalized).first(session)


async def list_profiles(
    session: AsyncSession,
    *,
    email_prefix: str | None = None,
    limit: int = PROFILE_SEARCH_LIMIT,
) -> list[Profile]:
    """List profiles; profiles are readable by every caller."""
    query = Profile.objects.all()
    prefix = normalize_email(email_prefix)
    if prefix:
        query = query.filter(col(Profile.email).startswith(prefix))
    return await query.order_by(col(Profile.email).asc()).limit(limit).all(session)


async def handle_identity_created(
    session: AsyncSession,
    identity: IdentityCreated,
) -> Profile:
    """Provision the profile for a newly created identity.

    Safe against duplicate delivery: an existing profile for the identity is
    returned unchanged, including when a concurrent delivery wins the insert.
    """
    existing = await get_profile(session, identity.id)
    if existing is not None:
        logger.debug("auth.profile.provision.duplicate", extra={"profile_id": identity.id})
        return existing

    email = normalize_email(identity.email)
    if email is None:
        raise ValidationError("Identity has no email address")

    profile = Profile(
        id=identity.id,
        email=email,
        full_name=_clean_optional(identity.full_name),
        avatar_url=_clean_optional(identity.avatar_url),
    )
    session.add(profile)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        existing = await get_profile(session, identity.id)
        if existing is not None:
            return existing
        # Email already belongs to a different identity.
        raise ValidationError("Email address is already registered") from None
    await session.refresh(profile)
    logger.info("auth.profile.provisioned", extra={"profile_id": profile.id})
    return profile


async def update_profile(
    session: AsyncSession,
    caller: Caller | None,
    profile_id: str,
    payload: ProfileUpdate,
) -> Profile:
    """Apply supplied fields to a profile; only its own identity may update it."""
    profile = await get_profile(session, profile_id)
    if profile is None:
        raise NotFoundError("Profile not found")
    await require(session, caller, Entity.PROFILE, Operation.UPDATE, profile)

    updates = payload.model_dump(exclude_unset=True)
    for key, value in updates.items():
        setattr(profile, key, _clean_optional(value))
    profile.updated_at = utcnow()
    session.add(profile)
    await session.commit()
    await session.refresh(profile)
    logger.info(
        "profile.update",
        extra={"profile_id": profile.id, "fields": sorted(updates)},
    )
    return profile
