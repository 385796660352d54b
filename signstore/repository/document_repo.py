from __future__ import annotations

import sqlite3
from dataclasses import dataclass, fields as dc_fields
from typing import Any, Iterable, List, Literal, Optional

from ..domain.models import Document, DocumentCreate, DocumentStatus, DocumentUpdate
from ..utils import from_epoch, new_id, now_epoch, to_epoch
from .base_repo import BaseRepository, coerce, enum_value

_BLOCKCHAIN_COLUMNS = {
    "original": "blockchain_tx_original",
    "signed": "blockchain_tx_signed",
}


@dataclass
class DocumentRow:
    id: str
    transfer_id: str
    file_name: str
    file_size: int
    file_hash: str
    status: str
    signed_at: Optional[int]
    signed_by: Optional[str]
    blockchain_tx_original: Optional[str]
    blockchain_tx_signed: Optional[str]
    created_at: int

    @classmethod
    def from_sqlite(cls, row: sqlite3.Row) -> "DocumentRow":
        return cls(**{f.name: row[f.name] for f in dc_fields(cls)})


class DocumentRepository(BaseRepository[Document]):
    table_name = "documents"
    row_type = DocumentRow

    def create(self, data: DocumentCreate | dict) -> Document:
        """Insert one document; raises sqlite3.IntegrityError if the transfer does not exist."""
        data = coerce(DocumentCreate, data)
        did = data.id or new_id()
        row = self.entity_to_row(data, DocumentCreate.model_fields)
        row.update(id=did, created_at=now_epoch())
        self.db.execute(
            "INSERT INTO documents ("
            "id, transfer_id, file_name, file_size, file_hash, status, signed_at, signed_by, "
            "blockchain_tx_original, blockchain_tx_signed, created_at"
            ") VALUES ("
            ":id, :transfer_id, :file_name, :file_size, :file_hash, :status, :signed_at, :signed_by, "
            ":blockchain_tx_original, :blockchain_tx_signed, :created_at)",
            row,
        )
        return self.find_by_id(did)

    def update(self, id: str, changes: DocumentUpdate | dict) -> Optional[Document]:
        changes = coerce(DocumentUpdate, changes)
        existing = self.find_by_id(id)
        if existing is None:
            return None
        columns = self.entity_to_row(changes)
        if not columns:
            return existing
        self._apply_update(id, columns)
        return self.find_by_id(id)

    def find_by_transfer_id(self, transfer_id: str) -> List[Document]:
        rows = self.db.query(
            "SELECT * FROM documents WHERE transfer_id = ? ORDER BY created_at ASC, rowid ASC",
            (transfer_id,),
        )
        return self._map_rows(rows)

    def find_by_status(self, status: DocumentStatus | str) -> List[Document]:
        rows = self.db.query(
            "SELECT * FROM documents WHERE status = ? ORDER BY rowid ASC", (enum_value(status),)
        )
        return self._map_rows(rows)

    def find_by_transfer_id_and_status(self, transfer_id: str, status: DocumentStatus | str) -> List[Document]:
        rows = self.db.query(
            "SELECT * FROM documents WHERE transfer_id = ? AND status = ? "
            "ORDER BY created_at ASC, rowid ASC",
            (transfer_id, enum_value(status)),
        )
        return self._map_rows(rows)

    def mark_as_signed(self, id: str, signed_by: Optional[str] = None) -> Optional[Document]:
        changes: dict[str, Any] = {"status": DocumentStatus.SIGNED, "signed_at": from_epoch(now_epoch())}
        if signed_by is not None:
            changes["signed_by"] = signed_by
        return self.update(id, changes)

    def delete_by_transfer_id(self, transfer_id: str) -> int:
        cur = self.db.execute("DELETE FROM documents WHERE transfer_id = ?", (transfer_id,))
        return cur.rowcount

    def update_blockchain_hash(self, id: str, slot: Literal["original", "signed"], tx_hash: str) -> bool:
        column = _BLOCKCHAIN_COLUMNS.get(slot)
        if column is None:
            raise ValueError(f"unknown blockchain slot: {slot!r}")
        cur = self.db.execute(f"UPDATE documents SET {column} = ? WHERE id = ?", (tx_hash, id))
        return cur.rowcount > 0

    def row_to_entity(self, row: sqlite3.Row) -> Document:
        r = DocumentRow.from_sqlite(row)
        return Document(
            id=r.id,
            transfer_id=r.transfer_id,
            file_name=r.file_name,
            file_size=r.file_size,
            file_hash=r.file_hash,
            status=DocumentStatus(r.status),
            signed_at=from_epoch(r.signed_at),
            signed_by=r.signed_by,
            blockchain_tx_original=r.blockchain_tx_original,
            blockchain_tx_signed=r.blockchain_tx_signed,
            created_at=from_epoch(r.created_at),
        )

    def entity_to_row(self, data: DocumentCreate | DocumentUpdate, fields: Optional[Iterable[str]] = None) -> dict[str, Any]:
        wanted = set(fields if fields is not None else data.model_fields_set)
        out: dict[str, Any] = {}
        for name in ("transfer_id", "file_name", "file_size", "file_hash"):
            if name in wanted:
                out[name] = getattr(data, name)
        if "status" in wanted and data.status is not None:
            out["status"] = enum_value(data.status)
        if "signed_at" in wanted:
            out["signed_at"] = to_epoch(data.signed_at)
        for name in ("signed_by", "blockchain_tx_original", "blockchain_tx_signed"):
            if name in wanted:
                out[name] = getattr(data, name)
        return out
