"""
Single "is visible" rule for soft-deletable rows.

A row is visible when it has not been soft-deleted and, where the table has
an ``is_active`` flag, that flag is set.  Queries use :func:`visible`; code
holding an already-loaded row uses :func:`is_visible`.
"""
from __future__ import annotations

from sqlalchemy import and_, true
from sqlalchemy.sql.elements import ColumnElement


def visible(model) -> ColumnElement[bool]:
    clauses = []
    if hasattr(model, "deleted_at"):
        clauses.append(model.deleted_at.is_(None))
    if hasattr(model, "is_active"):
        clauses.append(model.is_active.is_(True))
    return and_(true(), *clauses)


def is_visible(row) -> bool:
    if row is None:
        return False
    if getattr(row, "deleted_at", None) is not None:
        return False
    return bool(getattr(row, "is_active", True))
