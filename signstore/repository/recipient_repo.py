from __future__ import annotations

import sqlite3
from dataclasses import dataclass, fields as dc_fields
from typing import Any, Iterable, List, Optional

from ..domain.models import (
    Recipient,
    RecipientCreate,
    RecipientPreferences,
    RecipientStatus,
    RecipientUpdate,
)
from ..utils import from_epoch, new_id, now_epoch, to_epoch
from .base_repo import BaseRepository, coerce, enum_value


@dataclass
class RecipientRow:
    id: str
    transfer_id: str
    identifier: str
    transport: str
    status: str
    preferences: Optional[str]
    notified_at: Optional[int]
    viewed_at: Optional[int]
    signed_at: Optional[int]
    created_at: int

    @classmethod
    def from_sqlite(cls, row: sqlite3.Row) -> "RecipientRow":
        return cls(**{f.name: row[f.name] for f in dc_fields(cls)})


class RecipientRepository(BaseRepository[Recipient]):
    table_name = "recipients"
    row_type = RecipientRow

    def create(self, data: RecipientCreate | dict) -> Recipient:
        """Insert one recipient; raises sqlite3.IntegrityError if the transfer does not exist."""
        data = coerce(RecipientCreate, data)
        rid = data.id or new_id()
        row = self.entity_to_row(data, RecipientCreate.model_fields)
        row.update(id=rid, created_at=now_epoch())
        self.db.execute(
            "INSERT INTO recipients ("
            "id, transfer_id, identifier, transport, status, preferences, "
            "notified_at, viewed_at, signed_at, created_at"
            ") VALUES ("
            ":id, :transfer_id, :identifier, :transport, :status, :preferences, "
            ":notified_at, :viewed_at, :signed_at, :created_at)",
            row,
        )
        return self.find_by_id(rid)

    def update(self, id: str, changes: RecipientUpdate | dict) -> Optional[Recipient]:
        changes = coerce(RecipientUpdate, changes)
        existing = self.find_by_id(id)
        if existing is None:
            return None
        columns = self.entity_to_row(changes)
        if not columns:
            return existing
        self._apply_update(id, columns)
        return self.find_by_id(id)

    def find_by_transfer_id(self, transfer_id: str) -> List[Recipient]:
        rows = self.db.query(
            "SELECT * FROM recipients WHERE transfer_id = ? ORDER BY created_at ASC, rowid ASC",
            (transfer_id,),
        )
        return self._map_rows(rows)

    def find_by_identifier(self, identifier: str) -> List[Recipient]:
        rows = self.db.query(
            "SELECT * FROM recipients WHERE identifier = ? ORDER BY rowid ASC", (identifier,)
        )
        return self._map_rows(rows)

    def find_by_status(self, status: RecipientStatus | str) -> List[Recipient]:
        return self.find({"status": RecipientStatus(enum_value(status))})

    def find_by_transfer_id_and_status(self, transfer_id: str, status: RecipientStatus | str) -> List[Recipient]:
        rows = self.db.query(
            "SELECT * FROM recipients WHERE transfer_id = ? AND status = ? "
            "ORDER BY created_at ASC, rowid ASC",
            (transfer_id, enum_value(status)),
        )
        return self._map_rows(rows)

    def find_pending_by_transport(self, transport: str) -> List[Recipient]:
        """Recipients still waiting on `transport`, oldest first."""
        rows = self.db.query(
            "SELECT * FROM recipients WHERE transport = ? AND status = 'pending' "
            "ORDER BY created_at ASC, rowid ASC",
            (transport,),
        )
        return self._map_rows(rows)

    def update_status(self, id: str, status: RecipientStatus | str) -> bool:
        status = RecipientStatus(enum_value(status))
        cur = self.db.execute("UPDATE recipients SET status = ? WHERE id = ?", (status.value, id))
        return cur.rowcount > 0

    def _mark(self, id: str, status: RecipientStatus, column: str) -> bool:
        cur = self.db.execute(
            f"UPDATE recipients SET {column} = ?, status = ? WHERE id = ?",
            (now_epoch(), status.value, id),
        )
        return cur.rowcount > 0

    def mark_as_notified(self, id: str) -> bool:
        return self._mark(id, RecipientStatus.NOTIFIED, "notified_at")

    def mark_as_viewed(self, id: str) -> bool:
        return self._mark(id, RecipientStatus.VIEWED, "viewed_at")

    def mark_as_signed(self, id: str) -> bool:
        return self._mark(id, RecipientStatus.SIGNED, "signed_at")

    def delete_by_transfer_id(self, transfer_id: str) -> int:
        cur = self.db.execute("DELETE FROM recipients WHERE transfer_id = ?", (transfer_id,))
        return cur.rowcount

    def row_to_entity(self, row: sqlite3.Row) -> Recipient:
        r = RecipientRow.from_sqlite(row)
        return Recipient(
            id=r.id,
            transfer_id=r.transfer_id,
            identifier=r.identifier,
            transport=r.transport,
            status=RecipientStatus(r.status),
            preferences=RecipientPreferences.from_json(r.preferences),
            notified_at=from_epoch(r.notified_at),
            viewed_at=from_epoch(r.viewed_at),
            signed_at=from_epoch(r.signed_at),
            created_at=from_epoch(r.created_at),
        )

    def entity_to_row(self, data: RecipientCreate | RecipientUpdate, fields: Optional[Iterable[str]] = None) -> dict[str, Any]:
        wanted = set(fields if fields is not None else data.model_fields_set)
        out: dict[str, Any] = {}
        for name in ("transfer_id", "identifier", "transport"):
            if name in wanted:
                out[name] = getattr(data, name)
        if "status" in wanted and data.status is not None:
            out["status"] = enum_value(data.status)
        if "preferences" in wanted:
            out["preferences"] = data.preferences.to_json() if data.preferences is not None else None
        for name in ("notified_at", "viewed_at", "signed_at"):
            if name in wanted:
                out[name] = to_epoch(getattr(data, name))
        return out
