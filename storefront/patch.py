"""
Typed partial-update builder.

Collects ``(field, value)`` pairs and turns them into one parameterized
UPDATE, so only the fields a caller actually provided are written.
"""
from __future__ import annotations

from typing import Any, Dict, List, Tuple

from sqlalchemy import Update, inspect, update


class Patch:
    def __init__(self, model) -> None:
        self.model = model
        self._columns = {attr.key for attr in inspect(model).column_attrs}
        self._fields: List[Tuple[str, Any]] = []

    def set(self, field: str, value: Any) -> "Patch":
        if field not in self._columns:
            raise ValueError(f"{self.model.__name__} has no column {field!r}")
        self._fields = [(f, v) for f, v in self._fields if f != field]
        self._fields.append((field, value))
        return self

    def set_if_present(self, field: str, value: Any) -> "Patch":
        """Like :meth:`set` but skips ``None`` (the field was not provided)."""
        if value is None:
            return self
        return self.set(field, value)

    @property
    def fields(self) -> List[Tuple[str, Any]]:
        return list(self._fields)

    def values(self) -> Dict[str, Any]:
        return dict(self._fields)

    def __bool__(self) -> bool:
        return bool(self._fields)

    def statement(self, *where) -> Update:
        if not self._fields:
            raise ValueError("empty patch")
        return update(self.model).where(*where).values(**self.values())
