"""Small CRUD helpers shared by services."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlmodel import SQLModel, col, select

if TYPE_CHECKING:
    from sqlmodel.ext.asyncio.session import AsyncSession

ModelT = TypeVar("ModelT", bound=SQLModel)


async def get_or_create(
    session: AsyncSession,
    model: type[ModelT],
    *,
    defaults: dict[str, Any] | None = None,
    **lookup: Any,
) -> tuple[ModelT, bool]:
    """Fetch a row matching `lookup`, creating it with `defaults` when missing.

    Returns `(instance, created)`. A concurrent insert that wins the unique
    constraint race is resolved by re-reading the row.
    """
    stmt = select(model)
    for key, value in lookup.items():
        stmt = stmt.where(col(getattr(model, key)) == value)
    existing = (await session.exec(stmt)).first()
    if existing is not None:
        return existing, False

    instance = model(**{**(defaults or {}), **lookup})
    session.add(instance)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        existing = (await session.exec(stmt)).first()
        if existing is None:
            raise
        return existing, False
    await session.refresh(instance)
    return instance, True
