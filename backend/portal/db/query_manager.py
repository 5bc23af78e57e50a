"""Chainable query helpers exposed on models as `Model.objects`."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from sqlmodel import col, select

if TYPE_CHECKING:
    from uuid import UUID

    from sqlalchemy.sql.elements import ColumnElement
    from sqlmodel.ext.asyncio.session import AsyncSession
    from sqlmodel.sql.expression import SelectOfScalar

ModelT = TypeVar("ModelT")


@dataclass(frozen=True)
class QuerySet(Generic[ModelT]):
    """Immutable, lazily-executed select over a single model."""

    model: type[ModelT]
    criteria: tuple[ColumnElement[bool], ...] = ()
    ordering: tuple[Any, ...] = ()
    limit_value: int | None = None
    offset_value: int | None = None

    def _clone(self, **changes: Any) -> QuerySet[ModelT]:
        values = {
            "model": self.model,
            "criteria": self.criteria,
            "ordering": self.ordering,
            "limit_value": self.limit_value,
            "offset_value": self.offset_value,
        }
        values.update(changes)
        return QuerySet(**values)

    def filter(self, *criteria: ColumnElement[bool]) -> QuerySet[ModelT]:
        return self._clone(criteria=self.criteria + tuple(criteria))

    def filter_by(self, **kwargs: object) -> QuerySet[ModelT]:
        clauses = tuple(col(getattr(self.model, key)) == value for key, value in kwargs.items())
        return self._clone(criteria=self.criteria + clauses)

    def order_by(self, *ordering: Any) -> QuerySet[ModelT]:
        return self._clone(ordering=self.ordering + tuple(ordering))

    def limit(self, value: int) -> QuerySet[ModelT]:
        return self._clone(limit_value=value)

    def offset(self, value: int) -> QuerySet[ModelT]:
        return self._clone(offset_value=value)

    def statement(self) -> SelectOfScalar[ModelT]:
        stmt = select(self.model)
        for clause in self.criteria:
            stmt = stmt.where(clause)
        if self.ordering:
            stmt = stmt.order_by(*self.ordering)
        if self.offset_value is not None:
            stmt = stmt.offset(self.offset_value)
        if self.limit_value is not None:
            stmt = stmt.limit(self.limit_value)
        return stmt

    async def all(self, session: AsyncSession) -> list[ModelT]:
        return list(await session.exec(self.statement()))

    async def first(self, session: AsyncSession) -> ModelT | None:
        result = await session.exec(self.limit(1).statement())
        return result.first()


class QueryManager(Generic[ModelT]):
    """Entry point for building query sets for one model class."""

    def __init__(self, model: type[ModelT]) -> None:
        self.model = model

    def all(self) -> QuerySet[ModelT]:
        return QuerySet(self.model)

    def filter(self, *criteria: ColumnElement[bool]) -> QuerySet[ModelT]:
        return self.all().filter(*criteria)

    def filter_by(self, **kwargs: object) -> QuerySet[ModelT]:
        return self.all().filter_by(**kwargs)

    def by_id(self, obj_id: UUID) -> QuerySet[ModelT]:
        return self.filter_by(id=obj_id)

    def by_ids(self, obj_ids: list[UUID]) -> QuerySet[ModelT]:
        return self.filter(col(getattr(self.model, "id")).in_(obj_ids))


class ManagerDescriptor:
    """Class-level descriptor returning a fresh `QueryManager` for the owner model."""

    def __get__(self, instance: object, owner: type[ModelT]) -> QueryManager[ModelT]:
        return QueryManager(owner)
