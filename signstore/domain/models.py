"""
Domain entities and write inputs.

Entities are what repositories hand back. `*Create` / `*Update` models are
what callers hand in; for updates only the fields explicitly set count
(`model_fields_set`), so `TransferUpdate()` is a no-op and
`TransferUpdate(metadata=None)` clears the column.
"""
from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class TransferType(str, Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


class TransferStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    PARTIALLY_SIGNED = "partially-signed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class DocumentStatus(str, Enum):
    PENDING = "pending"
    SIGNED = "signed"
    REJECTED = "rejected"


class RecipientStatus(str, Enum):
    PENDING = "pending"
    NOTIFIED = "notified"
    VIEWED = "viewed"
    SIGNING = "signing"
    SIGNED = "signed"
    REJECTED = "rejected"


# ---------------- opaque key/value maps ----------------

class OpaqueMap(BaseModel):
    """Free-form map stored as a JSON column; known keys get typed fields."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    def as_dict(self) -> dict[str, Any]:
        """Unset typed keys are dropped; caller keys are kept as written, nulls included."""
        data = self.model_dump(by_alias=True)
        for name, field in type(self).model_fields.items():
            if getattr(self, name) is None:
                data.pop(field.alias or name, None)
        return data

    def get(self, key: str, default: Any = None) -> Any:
        return self.as_dict().get(key, default)

    def to_json(self) -> str:
        return json.dumps(self.as_dict(), ensure_ascii=False)

    @classmethod
    def from_json(cls, raw: Optional[str]):
        if raw is None:
            return None
        return cls.model_validate(json.loads(raw))


class TransferMetadata(OpaqueMap):
    deadline: Optional[str] = None
    message: Optional[str] = None
    require_all_signatures: Optional[bool] = Field(default=None, alias="requireAllSignatures")


class RecipientPreferences(OpaqueMap):
    fallback_transport: Optional[str] = Field(default=None, alias="fallbackTransport")
    notification_enabled: Optional[bool] = Field(default=None, alias="notificationEnabled")


class TransportConfig(OpaqueMap):
    pass


# ---------------- entities ----------------

class SenderInfo(BaseModel):
    sender_id: str
    name: str
    email: Optional[str] = None
    public_key: str
    transport: Optional[str] = None
    timestamp: Optional[int] = None  # ms
    verification_status: Literal["verified", "unverified"] = "unverified"


class Transfer(BaseModel):
    id: str
    type: TransferType
    status: TransferStatus
    sender: Optional[SenderInfo] = None
    transport_type: str
    transport_config: Optional[TransportConfig] = None
    metadata: Optional[TransferMetadata] = None
    created_at: datetime
    updated_at: datetime


class Document(BaseModel):
    id: str
    transfer_id: str
    file_name: str
    file_size: int
    file_hash: str
    status: DocumentStatus
    signed_at: Optional[datetime] = None
    signed_by: Optional[str] = None
    blockchain_tx_original: Optional[str] = None
    blockchain_tx_signed: Optional[str] = None
    created_at: datetime


class Recipient(BaseModel):
    id: str
    transfer_id: str
    identifier: str
    transport: str
    status: RecipientStatus
    preferences: Optional[RecipientPreferences] = None
    notified_at: Optional[datetime] = None
    viewed_at: Optional[datetime] = None
    signed_at: Optional[datetime] = None
    created_at: datetime


# ---------------- write inputs ----------------

class TransferCreate(BaseModel):
    id: Optional[str] = None
    type: TransferType = TransferType.OUTGOING
    status: TransferStatus = TransferStatus.PENDING
    sender: Optional[SenderInfo] = None
    transport_type: str = "p2p"
    transport_config: Optional[TransportConfig] = None
    metadata: Optional[TransferMetadata] = None


class TransferUpdate(BaseModel):
    status: Optional[TransferStatus] = None
    sender: Optional[SenderInfo] = None
    transport_type: Optional[str] = None
    transport_config: Optional[TransportConfig] = None
    metadata: Optional[TransferMetadata] = None


class DocumentCreate(BaseModel):
    id: Optional[str] = None
    transfer_id: str
    file_name: str
    file_size: int = Field(default=0, ge=0)
    file_hash: str = ""
    status: DocumentStatus = DocumentStatus.PENDING
    signed_at: Optional[datetime] = None
    signed_by: Optional[str] = None
    blockchain_tx_original: Optional[str] = None
    blockchain_tx_signed: Optional[str] = None


class DocumentUpdate(BaseModel):
    status: Optional[DocumentStatus] = None
    signed_at: Optional[datetime] = None
    signed_by: Optional[str] = None
    blockchain_tx_original: Optional[str] = None
    blockchain_tx_signed: Optional[str] = None


class RecipientCreate(BaseModel):
    id: Optional[str] = None
    transfer_id: str
    identifier: str
    transport: str
    status: RecipientStatus = RecipientStatus.PENDING
    preferences: Optional[RecipientPreferences] = None
    notified_at: Optional[datetime] = None
    viewed_at: Optional[datetime] = None
    signed_at: Optional[datetime] = None


class RecipientUpdate(BaseModel):
    status: Optional[RecipientStatus] = None
    preferences: Optional[RecipientPreferences] = None
    notified_at: Optional[datetime] = None
    viewed_at: Optional[datetime] = None
    signed_at: Optional[datetime] = None


# ---------------- workflow inputs / outputs ----------------

class NewDocument(BaseModel):
    """A document handed to the workflow; the owning transfer is implied."""
    id: Optional[str] = None
    file_name: str
    file_size: int = Field(default=0, ge=0)
    file_hash: str = ""
    blockchain_tx_original: Optional[str] = None


class NewRecipient(BaseModel):
    id: Optional[str] = None
    identifier: str
    transport: str
    preferences: Optional[RecipientPreferences] = None


class SignatureInput(BaseModel):
    document_id: str
    status: DocumentStatus
    signed_by: Optional[str] = None
    blockchain_tx_signed: Optional[str] = None


class TransferBundle(BaseModel):
    transfer: Transfer
    documents: List[Document] = Field(default_factory=list)
    recipients: List[Recipient] = Field(default_factory=list)


class SignOutcome(BaseModel):
    transfer: Optional[Transfer] = None
    status: Optional[TransferStatus] = None
    applied: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)
