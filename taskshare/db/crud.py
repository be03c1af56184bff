"""Small generic persistence helpers shared by services."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import delete

if TYPE_CHECKING:
    from sqlmodel import SQLModel
    from sqlmodel.ext.asyncio.session import AsyncSession


async def delete_where(
    session: AsyncSession,
    model: type[SQLModel],
    *criteria: Any,
    commit: bool = True,
) -> None:
    """Bulk-delete rows of `model` matching all criteria."""
    await session.exec(delete(model).where(*criteria))  # type: ignore[call-overload]
    if commit:
        await session.commit()
