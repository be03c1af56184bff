"""Reusable FastAPI dependencies for sessions and caller identity.

Routes resolve the authenticated caller here and hand it to the service
layer; row-level access decisions live in `taskshare.services.policy`, not in
the routers.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, status

from taskshare.core.auth import AuthContext, get_auth_context
from taskshare.db.session import get_session
from taskshare.models.profiles import Profile
from taskshare.services.policy import Caller

AUTH_DEP = Depends(get_auth_context)
SESSION_DEP = Depends(get_session)


def require_profile(auth: AuthContext = AUTH_DEP) -> Profile:
    """Require an authenticated caller with a provisioned profile."""
    if auth.actor_type != "user" or auth.profile is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
    return auth.profile


def require_caller(auth: AuthContext = AUTH_DEP) -> Caller:
    """Resolve the caller identity passed into every service call."""
    caller = auth.caller
    if caller is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
    return caller


PROFILE_DEP = Depends(require_profile)
CALLER_DEP = Depends(require_caller)
