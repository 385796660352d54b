from __future__ import annotations


class DatabaseNotInitializedError(RuntimeError):
    """Raised when a handle is requested before one was opened, or after close."""
