from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, Optional, TypeVar

from ..config import get_config
from ..db import Database
from ..domain.models import (
    Document,
    DocumentCreate,
    DocumentStatus,
    NewDocument,
    NewRecipient,
    Recipient,
    RecipientCreate,
    RecipientStatus,
    SenderInfo,
    SignatureInput,
    SignOutcome,
    TransferBundle,
    TransferCreate,
    TransferMetadata,
    TransferStatus,
    TransferType,
    TransportConfig,
)
from ..domain.status_engine import derive_transfer_status
from ..logs import LogContext, ensure_log_schema
from ..repository import DocumentRepository, RecipientRepository, TransferRepository
from ..repository.base_repo import coerce
from ..utils import from_epoch, now_epoch

logger = logging.getLogger(__name__)

T = TypeVar("T")

RECIPIENT_EVENTS = ("notified", "viewed", "signed")


class WorkflowManager:
    """
    Multi-entity operations over transfers, documents and recipients.

    This is the only place that bundles several repository calls into one
    atomic unit. Each write operation runs in `db.atomic()`, logs one line
    and, with audit enabled, leaves one `operation_log` row (OK or ERROR).
    """

    def __init__(self, db: Database, audit: Optional[bool] = None):
        self.db = db
        self.transfers = TransferRepository(db)
        self.documents = DocumentRepository(db)
        self.recipients = RecipientRepository(db)
        self.audit = get_config()["audit_log"] if audit is None else audit
        if self.audit:
            ensure_log_schema(db)

    def _run(self, log: LogContext, fn: Callable[[], T]) -> T:
        try:
            result = self.db.run_atomic(fn)
        except Exception as e:
            logger.error("%s failed for %s: %s", log.action, log.entity_id, e)
            self._write_log(log, "ERROR", str(e))
            raise
        self._write_log(log, "OK")
        return result

    def _write_log(self, log: LogContext, result: str, err: Optional[str] = None) -> None:
        if self.audit and self.db.is_open:
            log.write(self.db, result, err)

    # ---------------- transfers ----------------

    def create_transfer_with_documents(
        self,
        transfer_id: Optional[str],
        type: TransferType | str,
        documents: Optional[Iterable[NewDocument | dict]] = None,
        recipients: Optional[Iterable[NewRecipient | dict]] = None,
        sender: Optional[SenderInfo | dict] = None,
        metadata: Optional[TransferMetadata | dict] = None,
        transport_type: str = "p2p",
        transport_config: Optional[TransportConfig | dict] = None,
    ) -> TransferBundle:
        """Create a pending transfer with its documents and recipients, all or nothing."""
        docs_in = [coerce(NewDocument, d) for d in documents or []]
        recs_in = [coerce(NewRecipient, r) for r in recipients or []]
        payload = TransferCreate(
            id=transfer_id,
            type=type,
            status=TransferStatus.PENDING,
            sender=sender,
            transport_type=transport_type,
            transport_config=transport_config,
            metadata=metadata,
        )

        log = LogContext("CREATE_TRANSFER")
        log.set_entity("TRANSFER", transfer_id)
        log.set_payload({
            "type": payload.type.value,
            "documents": [d.file_name for d in docs_in],
            "recipients": [r.identifier for r in recs_in],
        })

        def _create() -> TransferBundle:
            transfer = self.transfers.create(payload)
            log.set_entity("TRANSFER", transfer.id)
            docs = [
                self.documents.create(DocumentCreate(
                    id=d.id,
                    transfer_id=transfer.id,
                    file_name=d.file_name,
                    file_size=d.file_size,
                    file_hash=d.file_hash,
                    blockchain_tx_original=d.blockchain_tx_original,
                    status=DocumentStatus.PENDING,
                ))
                for d in docs_in
            ]
            recs = [
                self.recipients.create(RecipientCreate(
                    id=r.id,
                    transfer_id=transfer.id,
                    identifier=r.identifier,
                    transport=r.transport,
                    preferences=r.preferences,
                    status=RecipientStatus.PENDING,
                ))
                for r in recs_in
            ]
            log.set_after({"documents": len(docs), "recipients": len(recs)})
            return TransferBundle(transfer=transfer, documents=docs, recipients=recs)

        bundle = self._run(log, _create)
        logger.info(
            "Transfer %s created with %d documents and %d recipients",
            bundle.transfer.id, len(bundle.documents), len(bundle.recipients),
        )
        return bundle

    def sign_documents_and_update_transfer(
        self,
        transfer_id: str,
        signatures: Optional[Iterable[SignatureInput | dict]] = None,
    ) -> SignOutcome:
        """
        Apply a batch of signing results, then re-derive the transfer status
        from all of its documents.

        The status is recomputed from scratch on every call, so repeating a
        batch is idempotent and a later call may move a completed or
        cancelled transfer again. Signatures naming a document that does not
        exist, or that belongs to another transfer, are skipped and reported
        in `SignOutcome.skipped`.
        """
        sigs = [coerce(SignatureInput, s) for s in signatures or []]

        log = LogContext("SIGN_DOCUMENTS")
        log.set_entity("TRANSFER", transfer_id)
        log.set_payload([s.model_dump(mode="json") for s in sigs])

        def _sign() -> SignOutcome:
            before = self.transfers.find_by_id(transfer_id)
            if before is None:
                return SignOutcome(transfer=None, skipped=[s.document_id for s in sigs])
            log.set_before({"status": before.status.value})

            applied: list[str] = []
            skipped: list[str] = []
            for sig in sigs:
                doc = self.documents.find_by_id(sig.document_id)
                if doc is None or doc.transfer_id != transfer_id:
                    skipped.append(sig.document_id)
                    continue
                changes: dict[str, Any] = {"status": sig.status}
                if sig.status == DocumentStatus.SIGNED:
                    changes["signed_at"] = from_epoch(now_epoch())
                if sig.signed_by is not None:
                    changes["signed_by"] = sig.signed_by
                if sig.blockchain_tx_signed is not None:
                    changes["blockchain_tx_signed"] = sig.blockchain_tx_signed
                self.documents.update(doc.id, changes)
                applied.append(doc.id)

            status = derive_transfer_status(d.status for d in self.documents.find_by_transfer_id(transfer_id))
            transfer = self.transfers.update(transfer_id, {"status": status})
            log.set_after({"status": status.value, "applied": applied, "skipped": skipped})
            return SignOutcome(transfer=transfer, status=status, applied=applied, skipped=skipped)

        outcome = self._run(log, _sign)
        if outcome.transfer is None:
            logger.warning("Signing batch for unknown transfer %s ignored", transfer_id)
        elif outcome.skipped:
            logger.warning("Transfer %s: skipped unknown documents %s", transfer_id, outcome.skipped)
        logger.info(
            "Documents signed and transfer updated: %s -> %s (signed in batch: %d)",
            transfer_id,
            outcome.status.value if outcome.status else None,
            sum(1 for s in sigs if s.status == DocumentStatus.SIGNED),
        )
        return outcome

    def delete_transfer_and_related_data(self, transfer_id: str) -> bool:
        """Delete documents, recipients, then the transfer itself in one unit."""
        log = LogContext("DELETE_TRANSFER")
        log.set_entity("TRANSFER", transfer_id)

        def _delete() -> bool:
            documents_deleted = self.documents.delete_by_transfer_id(transfer_id)
            recipients_deleted = self.recipients.delete_by_transfer_id(transfer_id)
            deleted = self.transfers.delete(transfer_id)
            log.set_after({
                "deleted": deleted,
                "documents": documents_deleted,
                "recipients": recipients_deleted,
            })
            return deleted

        deleted = self._run(log, _delete)
        logger.info("Transfer %s delete requested, removed=%s", transfer_id, deleted)
        return deleted

    def get_transfer_bundle(self, transfer_id: str) -> Optional[TransferBundle]:
        transfer = self.transfers.find_by_id(transfer_id)
        if transfer is None:
            return None
        return TransferBundle(
            transfer=transfer,
            documents=self.documents.find_by_transfer_id(transfer_id),
            recipients=self.recipients.find_by_transfer_id(transfer_id),
        )

    # ---------------- children added later ----------------

    def add_document(self, transfer_id: str, document: NewDocument | dict) -> Document:
        doc = coerce(NewDocument, document)
        log = LogContext("ADD_DOCUMENT")
        log.set_entity("TRANSFER", transfer_id)
        log.set_payload({"file_name": doc.file_name, "file_size": doc.file_size})

        def _add() -> Document:
            return self.documents.create(DocumentCreate(
                id=doc.id,
                transfer_id=transfer_id,
                file_name=doc.file_name,
                file_size=doc.file_size,
                file_hash=doc.file_hash,
                blockchain_tx_original=doc.blockchain_tx_original,
            ))

        return self._run(log, _add)

    def add_recipient(self, transfer_id: str, recipient: NewRecipient | dict) -> Recipient:
        rec = coerce(NewRecipient, recipient)
        log = LogContext("ADD_RECIPIENT")
        log.set_entity("TRANSFER", transfer_id)
        log.set_payload({"identifier": rec.identifier, "transport": rec.transport})

        def _add() -> Recipient:
            return self.recipients.create(RecipientCreate(
                id=rec.id,
                transfer_id=transfer_id,
                identifier=rec.identifier,
                transport=rec.transport,
                preferences=rec.preferences,
            ))

        return self._run(log, _add)

    # ---------------- events reported by transports ----------------

    def record_recipient_event(self, recipient_id: str, event: str) -> Optional[Recipient]:
        """Stamp a notify/view/sign milestone; None if the recipient is unknown."""
        markers = {
            "notified": self.recipients.mark_as_notified,
            "viewed": self.recipients.mark_as_viewed,
            "signed": self.recipients.mark_as_signed,
        }
        mark = markers.get(event)
        if mark is None:
            raise ValueError(f"unknown recipient event: {event!r}, expected one of {RECIPIENT_EVENTS}")

        log = LogContext(f"RECIPIENT_{event.upper()}")
        log.set_entity("RECIPIENT", recipient_id)

        def _mark() -> Optional[Recipient]:
            if not mark(recipient_id):
                return None
            return self.recipients.find_by_id(recipient_id)

        return self._run(log, _mark)

    def record_blockchain_tx(self, document_id: str, slot: str, tx_hash: str) -> bool:
        log = LogContext("BLOCKCHAIN_TX")
        log.set_entity("DOCUMENT", document_id)
        log.set_payload({"slot": slot, "tx": tx_hash})
        return self._run(log, lambda: self.documents.update_blockchain_hash(document_id, slot, tx_hash))
