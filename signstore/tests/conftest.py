import sys
import time
from pathlib import Path

import pytest

# Ensure project root on sys.path
_THIS_DIR = Path(__file__).resolve().parent
_PROJECT_ROOT = _THIS_DIR.parent.parent
if str(_PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(_PROJECT_ROOT))


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    # Never pick up a developer's config.yaml or db path
    monkeypatch.setenv("SIGNSTORE_CONFIG", str(tmp_path / "no-config.yaml"))
    monkeypatch.delenv("SIGNSTORE_DB_PATH", raising=False)
    yield
    from signstore.db import close_database
    close_database()


@pytest.fixture()
def db_path(tmp_path):
    return str(tmp_path / "signstore_test.db")


@pytest.fixture()
def db(db_path):
    from signstore.db import Database
    database = Database(db_path)
    yield database
    database.close()


@pytest.fixture()
def transfer_repo(db):
    from signstore.repository import TransferRepository
    return TransferRepository(db)


@pytest.fixture()
def document_repo(db):
    from signstore.repository import DocumentRepository
    return DocumentRepository(db)


@pytest.fixture()
def recipient_repo(db):
    from signstore.repository import RecipientRepository
    return RecipientRepository(db)


@pytest.fixture()
def wf(db):
    from signstore.services.workflow_svc import WorkflowManager
    return WorkflowManager(db, audit=True)


@pytest.fixture()
def seeded(db):
    """Two transfers, two documents and two recipients written with raw SQL."""
    now = int(time.time())
    with db.atomic():
        db.execute(
            "INSERT INTO transfers (id, type, status, sender_id, sender_name, sender_email, sender_public_key, "
            "transport_type, transport_config, metadata, created_at, updated_at) "
            "VALUES (?,?,?,?,?,?,?,?,?,?,?,?)",
            ("transfer-1", "outgoing", "pending", "sender-1", "Test Sender", "sender@test.com",
             "test-public-key", "p2p", '{"port": 9090}', '{"message": "Test transfer"}', now, now),
        )
        db.execute(
            "INSERT INTO transfers (id, type, status, sender_id, sender_name, sender_email, sender_public_key, "
            "transport_type, transport_config, metadata, created_at, updated_at) "
            "VALUES (?,?,?,?,?,?,?,?,?,?,?,?)",
            ("transfer-2", "incoming", "ready", "sender-2", "Another Sender", None,
             "another-public-key", "email", None, '{"deadline": "2024-12-31"}', now - 3600, now - 3600),
        )
        db.execute(
            "INSERT INTO documents (id, transfer_id, file_name, file_size, file_hash, status, signed_at, "
            "signed_by, blockchain_tx_original, blockchain_tx_signed, created_at) VALUES (?,?,?,?,?,?,?,?,?,?,?)",
            ("doc-1", "transfer-1", "test-doc-1.pdf", 1024, "hash-1", "pending", None, None, None, None, now),
        )
        db.execute(
            "INSERT INTO documents (id, transfer_id, file_name, file_size, file_hash, status, signed_at, "
            "signed_by, blockchain_tx_original, blockchain_tx_signed, created_at) VALUES (?,?,?,?,?,?,?,?,?,?,?)",
            ("doc-2", "transfer-1", "test-doc-2.pdf", 2048, "hash-2", "signed", now - 1800, "recipient-1",
             "tx-original-1", "tx-signed-1", now),
        )
        db.execute(
            "INSERT INTO recipients (id, transfer_id, identifier, transport, status, preferences, notified_at, "
            "viewed_at, signed_at, created_at) VALUES (?,?,?,?,?,?,?,?,?,?)",
            ("recipient-1", "transfer-1", "user1@example.com", "email", "notified",
             '{"notificationEnabled": true}', now - 1800, None, None, now),
        )
        db.execute(
            "INSERT INTO recipients (id, transfer_id, identifier, transport, status, preferences, notified_at, "
            "viewed_at, signed_at, created_at) VALUES (?,?,?,?,?,?,?,?,?,?)",
            ("recipient-2", "transfer-1", "user2@example.com", "p2p", "signed", None,
             now - 3600, now - 2400, now - 1800, now),
        )
    return db
