"""Shared SQLModel base exposing the `objects` query manager."""

from __future__ import annotations

from typing import Any, ClassVar

from sqlmodel import SQLModel

from portal.db.query_manager import ManagerDescriptor


class QueryModel(SQLModel, table=False):
    """Base class for table models with a `Model.objects` query entry point."""

    objects: ClassVar[Any] = ManagerDescriptor()
