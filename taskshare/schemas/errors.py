"""Structured error payload schemas used by API responses."""

from __future__ import annotations

from pydantic import Field
from sqlmodel import SQLModel


class ErrorDetail(SQLModel):
    """Machine-readable code with a human-readable message."""

    code: str = Field(examples=["not_found", "forbidden", "validation_error"])
    message: str = Field(examples=["Task not found"])


class ErrorResponse(SQLModel):
    """Error envelope returned for every failed request."""

    detail: ErrorDetail | str | list[object] = Field(
        description=(
            "Error payload. Domain failures carry `code` and `message`; "
            "request validation failures carry the field error list."
        ),
        examples=[{"code": "not_found", "message": "Task not found"}],
    )
    request_id: str | None = Field(
        default=None,
        description="Request correlation identifier injected by middleware.",
    )
