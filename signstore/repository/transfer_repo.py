from __future__ import annotations

import sqlite3
from dataclasses import dataclass, fields as dc_fields
from typing import Any, Iterable, List, Optional

from ..domain.models import (
    SenderInfo,
    Transfer,
    TransferCreate,
    TransferMetadata,
    TransferStatus,
    TransferType,
    TransferUpdate,
    TransportConfig,
)
from ..utils import from_epoch, new_id, now_epoch
from .base_repo import BaseRepository, coerce, enum_value


@dataclass
class TransferRow:
    id: str
    type: str
    status: str
    sender_id: Optional[str]
    sender_name: Optional[str]
    sender_email: Optional[str]
    sender_public_key: Optional[str]
    transport_type: str
    transport_config: Optional[str]
    metadata: Optional[str]
    created_at: int
    updated_at: int

    @classmethod
    def from_sqlite(cls, row: sqlite3.Row) -> "TransferRow":
        return cls(**{f.name: row[f.name] for f in dc_fields(cls)})


class TransferRepository(BaseRepository[Transfer]):
    table_name = "transfers"
    row_type = TransferRow

    def create(self, data: TransferCreate | dict) -> Transfer:
        data = coerce(TransferCreate, data)
        tid = data.id or new_id()
        now = now_epoch()
        row = self.entity_to_row(data, TransferCreate.model_fields)
        row.update(id=tid, created_at=now, updated_at=now)
        self.db.execute(
            "INSERT INTO transfers ("
            "id, type, status, sender_id, sender_name, sender_email, sender_public_key, "
            "transport_type, transport_config, metadata, created_at, updated_at"
            ") VALUES ("
            ":id, :type, :status, :sender_id, :sender_name, :sender_email, :sender_public_key, "
            ":transport_type, :transport_config, :metadata, :created_at, :updated_at)",
            row,
        )
        return self.find_by_id(tid)

    def update(self, id: str, changes: TransferUpdate | dict) -> Optional[Transfer]:
        changes = coerce(TransferUpdate, changes)
        existing = self.find_by_id(id)
        if existing is None:
            return None
        columns = self.entity_to_row(changes)
        if not columns:
            return existing
        columns["updated_at"] = now_epoch()
        self._apply_update(id, columns)
        return self.find_by_id(id)

    def find_by_type(self, type: TransferType | str) -> List[Transfer]:
        rows = self.db.query(
            "SELECT * FROM transfers WHERE type = ? ORDER BY rowid ASC", (enum_value(type),)
        )
        return self._map_rows(rows)

    def find_by_status(self, status: TransferStatus | str) -> List[Transfer]:
        rows = self.db.query(
            "SELECT * FROM transfers WHERE status = ? ORDER BY rowid ASC", (enum_value(status),)
        )
        return self._map_rows(rows)

    def find_recent(self, limit: int = 10) -> List[Transfer]:
        rows = self.db.query(
            "SELECT * FROM transfers ORDER BY created_at DESC, rowid DESC LIMIT ?", (int(limit),)
        )
        return self._map_rows(rows)

    def find_by_type_and_status(self, type: TransferType | str, status: TransferStatus | str) -> List[Transfer]:
        rows = self.db.query(
            "SELECT * FROM transfers WHERE type = ? AND status = ? "
            "ORDER BY created_at DESC, rowid DESC",
            (enum_value(type), enum_value(status)),
        )
        return self._map_rows(rows)

    def row_to_entity(self, row: sqlite3.Row) -> Transfer:
        r = TransferRow.from_sqlite(row)
        sender = None
        if r.sender_id:
            sender = SenderInfo(
                sender_id=r.sender_id,
                name=r.sender_name or "",
                email=r.sender_email,
                public_key=r.sender_public_key or "",
                transport=r.transport_type,
                timestamp=r.created_at * 1000,
                verification_status="unverified",
            )
        return Transfer(
            id=r.id,
            type=TransferType(r.type),
            status=TransferStatus(r.status),
            sender=sender,
            transport_type=r.transport_type,
            transport_config=TransportConfig.from_json(r.transport_config),
            metadata=TransferMetadata.from_json(r.metadata),
            created_at=from_epoch(r.created_at),
            updated_at=from_epoch(r.updated_at),
        )

    def entity_to_row(self, data: TransferCreate | TransferUpdate, fields: Optional[Iterable[str]] = None) -> dict[str, Any]:
        wanted = set(fields if fields is not None else data.model_fields_set)
        out: dict[str, Any] = {}
        if "type" in wanted and getattr(data, "type", None) is not None:
            out["type"] = enum_value(data.type)
        if "status" in wanted and data.status is not None:
            out["status"] = enum_value(data.status)
        if "sender" in wanted:
            s = data.sender
            out["sender_id"] = s.sender_id if s else None
            out["sender_name"] = s.name if s else None
            out["sender_email"] = s.email if s else None
            out["sender_public_key"] = s.public_key if s else None
        if "transport_type" in wanted and data.transport_type is not None:
            out["transport_type"] = data.transport_type
        if "transport_config" in wanted:
            out["transport_config"] = data.transport_config.to_json() if data.transport_config is not None else None
        if "metadata" in wanted:
            out["metadata"] = data.metadata.to_json() if data.metadata is not None else None
        return out
