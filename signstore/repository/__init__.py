"""Repository layer: DB access helpers (SQLite).

Keep classes thin and focused, so the workflow layer avoids SQL strings.
"""
from __future__ import annotations

from .base_repo import BaseRepository
from .document_repo import DocumentRepository
from .recipient_repo import RecipientRepository
from .transfer_repo import TransferRepository

__all__ = ["BaseRepository", "TransferRepository", "DocumentRepository", "RecipientRepository"]
