"""Dialect-aware INSERT ... ON CONFLICT support."""

from __future__ import annotations

from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession


def upsert_insert(session: AsyncSession, model: type[Any]):
    """Build an INSERT for ``model`` that supports ON CONFLICT clauses.

    Both PostgreSQL and SQLite expose ``on_conflict_do_update`` and
    ``on_conflict_do_nothing`` on their dialect-specific insert constructs.

    Args:
        session: Session whose bound engine decides the dialect.
        model: Mapped class to insert into.

    Returns:
        A dialect-specific ``Insert`` construct.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"Upsert not supported for dialect: {dialect}")
