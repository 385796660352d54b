"""
Operation log: one row per workflow write, kept in the same database.

Rows are written after the unit of work has committed or rolled back, so an
ERROR entry outlives the writes it describes.
"""
from __future__ import annotations

import datetime as dt
import json
import time
import uuid
from typing import Any, Dict, List, Optional, Tuple

from .db import Database

DDL = """
CREATE TABLE IF NOT EXISTS operation_log (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  ts TEXT NOT NULL,
  user TEXT NOT NULL,
  action TEXT NOT NULL,
  entity_type TEXT,
  entity_id TEXT,
  request_id TEXT,
  before_json TEXT,
  after_json TEXT,
  payload_json TEXT,
  result TEXT,
  err_msg TEXT,
  latency_ms INTEGER
);
CREATE INDEX IF NOT EXISTS idx_log_ts ON operation_log(ts);
CREATE INDEX IF NOT EXISTS idx_log_action ON operation_log(action);
"""

_COLUMNS = (
    "ts", "user", "action", "entity_type", "entity_id", "request_id",
    "before_json", "after_json", "payload_json", "result", "err_msg", "latency_ms",
)
_INSERT = "INSERT INTO operation_log ({}) VALUES ({})".format(
    ", ".join(_COLUMNS), ", ".join(f":{c}" for c in _COLUMNS)
)


def ensure_log_schema(db: Database) -> None:
    db.executescript(DDL)


def _dumps(obj: Any) -> Optional[str]:
    if obj is None:
        return None
    return json.dumps(obj, ensure_ascii=False, default=str)


class LogContext:
    """Collects what one operation touched; `write` persists it with its latency."""

    def __init__(self, action: str, user: str = "system"):
        self.action = action
        self.user = user
        self.request_id = str(uuid.uuid4())
        self.start = time.perf_counter()
        self.entity_type: Optional[str] = None
        self.entity_id: Optional[str] = None
        self.before: Any = None
        self.after: Any = None
        self.payload: Any = None

    def set_entity(self, etype: str, eid: Optional[str]):
        self.entity_type = etype
        self.entity_id = eid

    def set_before(self, obj): self.before = obj
    def set_after(self, obj): self.after = obj
    def set_payload(self, obj): self.payload = obj

    def write(self, db: Database, result: str = "OK", err: Optional[str] = None):
        db.execute(_INSERT, {
            "ts": dt.datetime.now(dt.timezone.utc).isoformat(),
            "user": self.user,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "request_id": self.request_id,
            "before_json": _dumps(self.before),
            "after_json": _dumps(self.after),
            "payload_json": _dumps(self.payload),
            "result": result,
            "err_msg": err,
            "latency_ms": int((time.perf_counter() - self.start) * 1000),
        })


def search_logs(db: Database, q: str | None = None, action: str | None = None,
                ts_from: str | None = None, ts_to: str | None = None,
                page: int = 1, size: int = 50,
                entity_id: str | None = None, result: str | None = None) -> Tuple[int, List[Dict[str, Any]]]:
    """Newest first. `q` is a substring match over the JSON columns and entity id."""
    filters = [
        (q, "(payload_json LIKE :q OR before_json LIKE :q OR after_json LIKE :q OR entity_id LIKE :q)",
         "q", f"%{q}%"),
        (action, "action = :action", "action", action),
        (entity_id, "entity_id = :entity_id", "entity_id", entity_id),
        (result, "result = :result", "result", result),
        (ts_from, "ts >= :ts_from", "ts_from", ts_from),
        (ts_to, "ts <= :ts_to", "ts_to", ts_to),
    ]
    clauses = [clause for value, clause, _, _ in filters if value]
    params: Dict[str, Any] = {name: bound for value, _, name, bound in filters if value}
    where = f" WHERE {' AND '.join(clauses)}" if clauses else ""

    total = db.query_one(f"SELECT COUNT(1) AS cnt FROM operation_log{where}", params)["cnt"]
    rows = db.query(
        f"SELECT * FROM operation_log{where} ORDER BY id DESC LIMIT :limit OFFSET :offset",
        {**params, "limit": size, "offset": (max(page, 1) - 1) * size},
    )
    return total, [dict(r) for r in rows]
