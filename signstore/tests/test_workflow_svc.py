"""
Workflow tests: multi-entity create, signing batches with status derivation,
cascading delete, and the operation log each call leaves behind.
"""
from __future__ import annotations

import json
import sqlite3

import pytest

from signstore.domain.models import (
    DocumentStatus,
    NewDocument,
    RecipientStatus,
    SignatureInput,
    TransferStatus,
    TransferType,
)
from signstore.logs import search_logs


def _docs(*ids):
    return [{"id": i, "file_name": f"{i}.pdf", "file_size": 100, "file_hash": f"hash-{i}"} for i in ids]


def _counts(db):
    return db.status()["tables"]


@pytest.fixture()
def two_docs(wf):
    return wf.create_transfer_with_documents(
        "t-1",
        "outgoing",
        documents=_docs("d1", "d2"),
        recipients=[{"identifier": "alice@example.com", "transport": "email"}],
    )


class TestCreate:
    def test_creates_everything(self, wf, db):
        bundle = wf.create_transfer_with_documents(
            "t-new",
            TransferType.OUTGOING,
            documents=[
                {"file_name": "contract.pdf", "file_size": 1024, "file_hash": "abc123"},
                NewDocument(file_name="appendix.pdf", file_size=512, file_hash="def456"),
            ],
            recipients=[
                {"identifier": "user@example.com", "transport": "email",
                 "preferences": {"notificationEnabled": True}},
                {"identifier": "peer-1", "transport": "p2p"},
            ],
            sender={"sender_id": "s-1", "name": "Sender", "public_key": "pk"},
            metadata={"message": "please sign"},
        )
        assert bundle.transfer.id == "t-new"
        assert bundle.transfer.status == TransferStatus.PENDING
        assert bundle.transfer.sender.sender_id == "s-1"
        assert bundle.transfer.metadata.message == "please sign"
        assert [d.file_name for d in bundle.documents] == ["contract.pdf", "appendix.pdf"]
        assert all(d.status == DocumentStatus.PENDING and d.transfer_id == "t-new" for d in bundle.documents)
        assert [r.identifier for r in bundle.recipients] == ["user@example.com", "peer-1"]
        assert all(r.status == RecipientStatus.PENDING for r in bundle.recipients)
        assert bundle.recipients[0].preferences.notification_enabled is True
        assert _counts(db) == {"transfers": 1, "documents": 2, "recipients": 2}

    def test_generated_transfer_id(self, wf):
        bundle = wf.create_transfer_with_documents(None, "incoming")
        assert bundle.transfer.id
        assert bundle.documents == [] and bundle.recipients == []
        assert wf.get_transfer_bundle(bundle.transfer.id) == bundle

    def test_failure_rolls_back_whole_unit(self, wf, db):
        with pytest.raises(sqlite3.IntegrityError):
            wf.create_transfer_with_documents("t-bad", "outgoing", documents=_docs("dup", "dup"))
        assert _counts(db) == {"transfers": 0, "documents": 0, "recipients": 0}

    def test_recipient_failure_rolls_back_documents(self, wf, db, monkeypatch):
        def _boom(*a, **kw):
            raise RuntimeError("recipient store down")

        monkeypatch.setattr(wf.recipients, "create", _boom)
        with pytest.raises(RuntimeError, match="recipient store down"):
            wf.create_transfer_with_documents(
                "t-bad", "outgoing", documents=_docs("d1"),
                recipients=[{"identifier": "x", "transport": "email"}],
            )
        assert _counts(db) == {"transfers": 0, "documents": 0, "recipients": 0}

    def test_invalid_input_writes_nothing(self, wf, db):
        with pytest.raises(ValueError):
            wf.create_transfer_with_documents("t-x", "sideways")
        with pytest.raises(ValueError):
            wf.create_transfer_with_documents("t-x", "outgoing", documents=[{"file_name": "a", "file_size": -5}])
        assert _counts(db)["transfers"] == 0


class TestSign:
    def test_all_signed_completes(self, wf, two_docs):
        out = wf.sign_documents_and_update_transfer("t-1", [
            {"document_id": "d1", "status": "signed", "signed_by": "alice", "blockchain_tx_signed": "0x1"},
            SignatureInput(document_id="d2", status=DocumentStatus.SIGNED),
        ])
        assert out.status == TransferStatus.COMPLETED
        assert out.transfer.status == TransferStatus.COMPLETED
        assert out.applied == ["d1", "d2"]
        assert out.skipped == []
        d1 = wf.documents.find_by_id("d1")
        assert d1.signed_at is not None
        assert d1.signed_by == "alice"
        assert d1.blockchain_tx_signed == "0x1"
        assert wf.documents.find_by_id("d2").signed_by is None

    def test_partial_then_complete(self, wf, two_docs):
        out = wf.sign_documents_and_update_transfer("t-1", [{"document_id": "d1", "status": "signed"}])
        assert out.status == TransferStatus.PARTIALLY_SIGNED
        out = wf.sign_documents_and_update_transfer("t-1", [{"document_id": "d2", "status": "signed"}])
        assert out.status == TransferStatus.COMPLETED

    def test_any_rejection_cancels(self, wf, two_docs):
        out = wf.sign_documents_and_update_transfer("t-1", [
            {"document_id": "d1", "status": "signed"},
            {"document_id": "d2", "status": "rejected"},
        ])
        assert out.status == TransferStatus.CANCELLED
        d2 = wf.documents.find_by_id("d2")
        assert d2.status == DocumentStatus.REJECTED
        assert d2.signed_at is None

    def test_pending_batch_makes_ready(self, wf, two_docs):
        out = wf.sign_documents_and_update_transfer("t-1", [{"document_id": "d1", "status": "pending"}])
        assert out.status == TransferStatus.READY

    def test_empty_batch_rederives(self, wf, two_docs):
        out = wf.sign_documents_and_update_transfer("t-1", [])
        assert out.status == TransferStatus.READY
        assert out.applied == []

    def test_transfer_without_documents_completes(self, wf):
        wf.create_transfer_with_documents("t-empty", "incoming")
        out = wf.sign_documents_and_update_transfer("t-empty")
        assert out.status == TransferStatus.COMPLETED

    def test_repeating_a_batch_is_stable(self, wf, two_docs):
        batch = [{"document_id": "d1", "status": "signed"}]
        first = wf.sign_documents_and_update_transfer("t-1", batch)
        second = wf.sign_documents_and_update_transfer("t-1", batch)
        assert first.status == second.status == TransferStatus.PARTIALLY_SIGNED

    def test_rejection_can_be_corrected(self, wf, two_docs):
        wf.sign_documents_and_update_transfer("t-1", [
            {"document_id": "d1", "status": "signed"},
            {"document_id": "d2", "status": "rejected"},
        ])
        out = wf.sign_documents_and_update_transfer("t-1", [{"document_id": "d2", "status": "signed"}])
        assert out.status == TransferStatus.COMPLETED

    def test_unknown_and_foreign_documents_skipped(self, wf, two_docs):
        wf.create_transfer_with_documents("t-other", "outgoing", documents=_docs("foreign"))
        out = wf.sign_documents_and_update_transfer("t-1", [
            {"document_id": "ghost", "status": "signed"},
            {"document_id": "foreign", "status": "signed"},
            {"document_id": "d1", "status": "signed"},
        ])
        assert out.applied == ["d1"]
        assert out.skipped == ["ghost", "foreign"]
        assert out.status == TransferStatus.PARTIALLY_SIGNED
        assert wf.documents.find_by_id("foreign").status == DocumentStatus.PENDING
        assert wf.transfers.find_by_id("t-other").status == TransferStatus.PENDING

    def test_unknown_transfer_writes_nothing(self, wf, db):
        out = wf.sign_documents_and_update_transfer("nope", [{"document_id": "d1", "status": "signed"}])
        assert out.transfer is None
        assert out.status is None
        assert out.skipped == ["d1"]
        assert _counts(db)["transfers"] == 0

    def test_invalid_signature_status(self, wf, two_docs):
        with pytest.raises(ValueError):
            wf.sign_documents_and_update_transfer("t-1", [{"document_id": "d1", "status": "approved"}])
        assert wf.documents.find_by_id("d1").status == DocumentStatus.PENDING


class TestDelete:
    def test_removes_transfer_and_children(self, wf, db, two_docs):
        wf.create_transfer_with_documents("t-keep", "incoming", documents=_docs("k1"))
        assert wf.delete_transfer_and_related_data("t-1") is True
        assert wf.get_transfer_bundle("t-1") is None
        assert _counts(db) == {"transfers": 1, "documents": 1, "recipients": 0}

    def test_nonexistent_returns_false(self, wf):
        assert wf.delete_transfer_and_related_data("missing") is False

    def test_failure_keeps_children(self, wf, db, two_docs, monkeypatch):
        def _boom(*a, **kw):
            raise RuntimeError("disk full")

        monkeypatch.setattr(wf.transfers, "delete", _boom)
        with pytest.raises(RuntimeError):
            wf.delete_transfer_and_related_data("t-1")
        assert _counts(db) == {"transfers": 1, "documents": 2, "recipients": 1}


class TestChildren:
    def test_add_document_and_recipient(self, wf, two_docs):
        doc = wf.add_document("t-1", {"file_name": "late.pdf", "file_size": 3})
        rec = wf.add_recipient("t-1", {"identifier": "carol", "transport": "p2p"})
        bundle = wf.get_transfer_bundle("t-1")
        assert [d.id for d in bundle.documents][-1] == doc.id
        assert [r.id for r in bundle.recipients][-1] == rec.id
        assert doc.status == DocumentStatus.PENDING

    def test_add_to_missing_transfer_fails(self, wf, db):
        with pytest.raises(sqlite3.IntegrityError):
            wf.add_document("missing", {"file_name": "a.pdf"})
        with pytest.raises(sqlite3.IntegrityError):
            wf.add_recipient("missing", {"identifier": "x", "transport": "email"})
        assert _counts(db) == {"transfers": 0, "documents": 0, "recipients": 0}

    def test_record_recipient_event(self, wf, two_docs):
        rid = two_docs.recipients[0].id
        r = wf.record_recipient_event(rid, "viewed")
        assert r.status == RecipientStatus.VIEWED
        assert r.viewed_at is not None
        assert wf.record_recipient_event("missing", "signed") is None
        with pytest.raises(ValueError):
            wf.record_recipient_event(rid, "forwarded")

    def test_record_blockchain_tx(self, wf, two_docs):
        assert wf.record_blockchain_tx("d1", "original", "0xorig") is True
        assert wf.documents.find_by_id("d1").blockchain_tx_original == "0xorig"
        assert wf.record_blockchain_tx("missing", "signed", "0x2") is False
        with pytest.raises(ValueError):
            wf.record_blockchain_tx("d1", "middle", "0x3")


class TestOperationLog:
    def test_ok_rows(self, wf, db, two_docs):
        wf.sign_documents_and_update_transfer("t-1", [{"document_id": "d1", "status": "signed"}])
        total, rows = search_logs(db, action="SIGN_DOCUMENTS")
        assert total == 1
        row = rows[0]
        assert row["result"] == "OK"
        assert row["entity_id"] == "t-1"
        assert json.loads(row["before_json"]) == {"status": "pending"}
        assert json.loads(row["after_json"])["status"] == "partially-signed"

        total, rows = search_logs(db, action="CREATE_TRANSFER")
        assert total == 1
        assert json.loads(rows[0]["after_json"]) == {"documents": 2, "recipients": 1}

    def test_error_row_survives_rollback(self, wf, db):
        with pytest.raises(sqlite3.IntegrityError):
            wf.create_transfer_with_documents("t-bad", "outgoing", documents=_docs("dup", "dup"))
        total, rows = search_logs(db, action="CREATE_TRANSFER")
        assert total == 1
        assert rows[0]["result"] == "ERROR"
        assert rows[0]["err_msg"]

    def test_audit_disabled(self, db):
        from signstore.services.workflow_svc import WorkflowManager

        quiet = WorkflowManager(db, audit=False)
        quiet.create_transfer_with_documents("t-q", "outgoing")
        assert db.query_one("SELECT name FROM sqlite_master WHERE name = 'operation_log'") is None


def test_concurrent_signers_share_one_handle(wf, db):
    import threading

    ids = [f"c{i}" for i in range(20)]
    wf.create_transfer_with_documents("t-many", "outgoing", documents=_docs(*ids))
    errors: list[BaseException] = []
    start = threading.Barrier(len(ids))

    def _sign(doc_id):
        try:
            start.wait()
            wf.sign_documents_and_update_transfer("t-many", [{"document_id": doc_id, "status": "signed"}])
        except BaseException as e:
            errors.append(e)

    threads = [threading.Thread(target=_sign, args=(i,)) for i in ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert errors == []
    assert not any(t.is_alive() for t in threads)
    assert wf.transfers.find_by_id("t-many").status == TransferStatus.COMPLETED
    assert db.status()["tables"]["documents"] == 20
    assert all(d.status == DocumentStatus.SIGNED for d in wf.documents.find_by_transfer_id("t-many"))
    total, _ = search_logs(db, action="SIGN_DOCUMENTS")
    assert total == 20
