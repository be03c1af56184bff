"""Base SQLModel class with a small chainable query manager."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, ClassVar, Generic, TypeVar

from sqlmodel import SQLModel, col, select

if TYPE_CHECKING:
    from sqlmodel.ext.asyncio.session import AsyncSession
    from sqlmodel.sql.expression import SelectOfScalar

ModelT = TypeVar("ModelT", bound="QueryModel")


@dataclass(frozen=True)
class QuerySet(Generic[ModelT]):
    """Immutable wrapper around a select statement for a single model."""

    model: type[ModelT]
    statement: SelectOfScalar[ModelT]

    def filter(self, *criteria: Any) -> QuerySet[ModelT]:
        return replace(self, statement=self.statement.where(*criteria))

    def filter_by(self, **kwargs: Any) -> QuerySet[ModelT]:
        return replace(self, statement=self.statement.filter_by(**kwargs))

    def order_by(self, *columns: Any) -> QuerySet[ModelT]:
        return replace(self, statement=self.statement.order_by(*columns))

    def limit(self, value: int) -> QuerySet[ModelT]:
        return replace(self, statement=self.statement.limit(value))

    async def all(self, session: AsyncSession) -> list[ModelT]:
        return list(await session.exec(self.statement))

    async def first(self, session: AsyncSession) -> ModelT | None:
        return (await session.exec(self.statement)).first()


class ModelManager(Generic[ModelT]):
    """Entry point for building `QuerySet`s from a model class."""

    def __init__(self, model: type[ModelT]) -> None:
        self.model = model

    def all(self) -> QuerySet[ModelT]:
        return QuerySet(self.model, select(self.model))

    def by_id(self, obj_id: object) -> QuerySet[ModelT]:
        return self.filter(col(self.model.id) == obj_id)  # type: ignore[attr-defined]

    def filter(self, *criteria: Any) -> QuerySet[ModelT]:
        return self.all().filter(*criteria)

    def filter_by(self, **kwargs: Any) -> QuerySet[ModelT]:
        return self.all().filter_by(**kwargs)


class _ManagerDescriptor:
    def __get__(self, _instance: object, owner: type[Any]) -> ModelManager[Any]:
        return ModelManager(owner)


class QueryModel(SQLModel, table=False):
    """Base class for table models exposing `Model.objects` query helpers."""

    objects: ClassVar[_ManagerDescriptor] = _ManagerDescriptor()
