from __future__ import annotations

import sqlite3
from abc import ABC, abstractmethod
from dataclasses import fields as dc_fields
from typing import Any, Generic, Iterable, List, Optional, Tuple, TypeVar

from pydantic import BaseModel

from ..db import Database

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)


def coerce(model_cls: type[M], data: M | dict) -> M:
    """Accept either the input model or a plain dict of its fields."""
    if isinstance(data, model_cls):
        return data
    return model_cls.model_validate(data)


def enum_value(v: Any) -> Any:
    return getattr(v, "value", v)


class BaseRepository(ABC, Generic[T]):
    """
    Shared finders for one table keyed by a TEXT `id`.

    Subclasses decode rows into their row struct and map to/from entities.
    Column names in criteria and `order_by` are checked against the row
    struct, so only real columns ever reach the SQL text.
    Repositories never open transactions themselves; callers that need
    several statements to land together wrap them in `db.atomic()`.
    """

    table_name: str = ""
    row_type: type = object

    def __init__(self, db: Database):
        self.db = db

    @property
    def columns(self) -> Tuple[str, ...]:
        return tuple(f.name for f in dc_fields(self.row_type))

    def _check_column(self, name: str) -> str:
        if name not in self.columns:
            raise ValueError(f"unknown column for {self.table_name}: {name!r}")
        return name

    def _where(self, criteria: Optional[dict]) -> Tuple[str, dict]:
        """Equality on every key; a None value matches NULL."""
        clauses = []
        params: dict[str, Any] = {}
        for i, (col, value) in enumerate((criteria or {}).items()):
            self._check_column(col)
            if value is None:
                clauses.append(f"{col} IS NULL")
            else:
                clauses.append(f"{col} = :c{i}")
                params[f"c{i}"] = enum_value(value)
        return (" WHERE " + " AND ".join(clauses) if clauses else ""), params

    def _select(self, criteria: Optional[dict], limit: Optional[int], offset: int,
                order_by: Optional[str], descending: bool) -> List[T]:
        where, params = self._where(criteria)
        direction = "DESC" if descending else "ASC"
        order = f"rowid {direction}"
        if order_by:
            order = f"{self._check_column(order_by)} {direction}, {order}"
        sql = f"SELECT * FROM {self.table_name}{where} ORDER BY {order}"
        if limit is not None or offset:
            sql += " LIMIT :limit OFFSET :offset"
            params.update(limit=-1 if limit is None else int(limit), offset=int(offset))
        return self._map_rows(self.db.query(sql, params))

    def find_by_id(self, id: str) -> Optional[T]:
        row = self.db.query_one(f"SELECT * FROM {self.table_name} WHERE id = ?", (id,))
        return self.row_to_entity(row) if row else None

    def find_all(self, limit: Optional[int] = None, offset: int = 0,
                 order_by: Optional[str] = None, descending: bool = False) -> List[T]:
        """Insertion order unless `order_by` names a column."""
        return self._select(None, limit, offset, order_by, descending)

    def find(self, criteria: dict, limit: Optional[int] = None, offset: int = 0,
             order_by: Optional[str] = None, descending: bool = False) -> List[T]:
        return self._select(criteria, limit, offset, order_by, descending)

    def find_one(self, criteria: dict) -> Optional[T]:
        found = self._select(criteria, 1, 0, None, False)
        return found[0] if found else None

    def delete(self, id: str) -> bool:
        cur = self.db.execute(f"DELETE FROM {self.table_name} WHERE id = ?", (id,))
        return cur.rowcount > 0

    def count(self, criteria: Optional[dict] = None) -> int:
        where, params = self._where(criteria)
        return int(self.db.query_one(f"SELECT COUNT(1) AS c FROM {self.table_name}{where}", params)["c"])

    def exists(self, id: str) -> bool:
        return self.db.query_one(f"SELECT 1 FROM {self.table_name} WHERE id = ?", (id,)) is not None

    def _map_rows(self, rows: List[sqlite3.Row]) -> List[T]:
        return [self.row_to_entity(r) for r in rows]

    def _apply_update(self, id: str, columns: dict[str, Any]) -> None:
        sets = ", ".join(f"{col} = :{col}" for col in columns)
        self.db.execute(
            f"UPDATE {self.table_name} SET {sets} WHERE id = :id",
            {**columns, "id": id},
        )

    @abstractmethod
    def row_to_entity(self, row: sqlite3.Row) -> T:
        ...

    @abstractmethod
    def entity_to_row(self, data: BaseModel, fields: Optional[Iterable[str]] = None) -> dict[str, Any]:
        """Column values for `fields` of `data` (default: the fields explicitly set)."""
