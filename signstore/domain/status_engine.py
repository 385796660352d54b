from __future__ import annotations

from typing import Iterable

from .models import DocumentStatus, TransferStatus


def derive_transfer_status(document_statuses: Iterable[DocumentStatus | str]) -> TransferStatus:
    """
    Aggregate a transfer's status from the statuses of all its documents.

    Precedence, first match wins:
    - every document signed -> COMPLETED (also for zero documents)
    - any document rejected -> CANCELLED
    - any document signed   -> PARTIALLY_SIGNED
    - otherwise             -> READY
    """
    statuses = [DocumentStatus(s) for s in document_statuses]
    signed = [s == DocumentStatus.SIGNED for s in statuses]

    if all(signed):
        return TransferStatus.COMPLETED
    if DocumentStatus.REJECTED in statuses:
        return TransferStatus.CANCELLED
    if any(signed):
        return TransferStatus.PARTIALLY_SIGNED
    return TransferStatus.READY
