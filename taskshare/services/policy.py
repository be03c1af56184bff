"""Row-level authorization rules for profiles, tasks, and task shares.

Every (entity, operation) pair maps to a tuple of predicate clauses. A caller
passes when ANY clause matches the candidate row; pairs without clauses are
denied, as is every request without an authenticated caller.

The same rules are exposed twice:

- `authorize()` / `require()` evaluate one concrete row, used on mutation
  paths before anything is written.
- `visible_task_clause()` / `visible_share_clause()` return SQL expressions so
  list queries evaluate the read rule per row inside the database.

Services must go through one of these on every access path; route handlers
never filter rows themselves.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from sqlalchemy import or_
from sqlalchemy.orm import aliased
from sqlmodel import col, select

from taskshare.core.errors import AuthorizationError, NotFoundError
from taskshare.core.logging import get_logger
from taskshare.models.task_shares import TaskShare
from taskshare.models.tasks import Task

if TYPE_CHECKING:
    from sqlalchemy.sql.elements import ColumnElement
    from sqlmodel.ext.asyncio.session import AsyncSession

logger = get_logger(__name__)


class Entity(str, Enum):
    """Entities guarded by the policy model."""

    PROFILE = "profile"
    TASK = "task"
    SHARE = "share"


class Operation(str, Enum):
    """Row operations checked by the policy model."""

    READ = "read"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class Caller:
    """Authenticated identity on whose behalf a request runs."""

    id: str
    email: str | None = None


Clause = Callable[["AsyncSession", Caller, Any], Awaitable[bool]]


async def _always(_session: AsyncSession, _caller: Caller, _row: Any) -> bool:
    return True


async def _is_self(_session: AsyncSession, caller: Caller, row: Any) -> bool:
    return caller.id == row.id


async def _is_task_owner(_session: AsyncSession, caller: Caller, row: Any) -> bool:
    return caller.id == row.owner_id


async def _share_exists(
    session: AsyncSession,
    *,
    task_id: object,
    recipient_id: str,
    permission: str | None = None,
) -> bool:
    statement = select(TaskShare.id).where(
        col(TaskShare.task_id) == task_id,
        col(TaskShare.recipient_id) == recipient_id,
    )
    if permission is not None:
        statement = statement.where(col(TaskShare.permission) == permission)
    return (await session.exec(statement.limit(1))).first() is not None


async def _is_share_recipient(session: AsyncSession, caller: Caller, row: Any) -> bool:
    return await _share_exists(session, task_id=row.id, recipient_id=caller.id)


async def _is_edit_share_recipient(session: AsyncSession, caller: Caller, row: Any) -> bool:
    return await _share_exists(
        session,
        task_id=row.id,
        recipient_id=caller.id,
        permission="edit",
    )


async def _is_grantor(_session: AsyncSession, caller: Caller, row: Any) -> bool:
    return caller.id == row.grantor_id


async def _is_recipient(_session: AsyncSession, caller: Caller, row: Any) -> bool:
    return caller.id == row.recipient_id


async def _owns_shared_task(session: AsyncSession, caller: Caller, row: Any) -> bool:
    # Checked against storage, not against fields on the share row itself.
    statement = select(Task.id).where(
        col(Task.id) == row.task_id,
        col(Task.owner_id) == caller.id,
    )
    return (await session.exec(statement.limit(1))).first() is not None


POLICY_RULES: dict[tuple[Entity, Operation], tuple[Clause, ...]] = {
    (Entity.PROFILE, Operation.READ): (_always,),
    (Entity.PROFILE, Operation.UPDATE): (_is_self,),
    (Entity.PROFILE, Operation.INSERT): (_is_self,),
    (Entity.TASK, Operation.READ): (_is_task_owner, _is_share_recipient),
    (Entity.TASK, Operation.INSERT): (_is_task_owner,),
    (Entity.TASK, Operation.UPDATE): (_is_task_owner, _is_edit_share_recipient),
    (Entity.TASK, Operation.DELETE): (_is_task_owner,),
    (Entity.SHARE, Operation.READ): (_is_grantor, _is_recipient),
    (Entity.SHARE, Operation.INSERT): (_owns_shared_task,),
    (Entity.SHARE, Operation.DELETE): (_owns_shared_task,),
}


async def authorize(
    session: AsyncSession,
    caller: Caller | None,
    entity: Entity,
    operation: Operation,
    row: Any,
) -> bool:
    """Return whether `caller` may perform `operation` on `row`."""
    if caller is None:
        return False
    clauses = POLICY_RULES.get((entity, operation), ())
    for clause in clauses:
        if await clause(session, caller, row):
            return True
    return False


async def require(
    session: AsyncSession,
    caller: Caller | None,
    entity: Entity,
    operation: Operation,
    row: Any,
) -> None:
    """Raise unless the policy allows the operation.

    Denied reads surface as `NotFoundError` so a caller cannot distinguish a
    hidden row from a missing one. Denied mutations raise `AuthorizationError`.
    """
    if caller is None:
        raise AuthorizationError("Authentication required")
    if await authorize(session, caller, entity, operation, row):
        return
    logger.info(
        "policy.denied",
        extra={
            "caller_id": caller.id,
            "entity": entity.value,
            "operation": operation.value,
            "row_id": str(getattr(row, "id", "")),
        },
    )
    if operation == Operation.READ:
        raise NotFoundError(f"{entity.value.capitalize()} not found")
    raise AuthorizationError(
        f"Not allowed to {operation.value} this {entity.value}",
    )


def require_caller(caller: Caller | None) -> Caller:
    """Return the caller or raise when the request is unauthenticated."""
    if caller is None:
        raise AuthorizationError("Authentication required")
    return caller


def visible_task_clause(caller_id: str) -> ColumnElement[bool]:
    """SQL form of the task read rule: owner OR any share naming the caller."""
    # Correlated to the task only; the outer query may already join task_shares.
    share = aliased(TaskShare)
    shared_with_caller = (
        select(share.id)
        .where(
            share.task_id == col(Task.id),
            share.recipient_id == caller_id,
        )
        .correlate(Task)
        .exists()
    )
    return or_(col(Task.owner_id) == caller_id, shared_with_caller)


def visible_share_clause(caller_id: str) -> ColumnElement[bool]:
    """SQL form of the share read rule: caller is grantor OR recipient."""
    return or_(
        col(TaskShare.grantor_id) == caller_id,
        col(TaskShare.recipient_id) == caller_id,
    )
