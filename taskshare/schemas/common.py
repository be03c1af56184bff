"""Common reusable schema primitives and simple API response envelopes."""

from __future__ import annotations

from pydantic import Field
from sqlmodel import SQLModel


class OkResponse(SQLModel):
    """Standard success response payload."""

    ok: bool = Field(default=True, examples=[True])
