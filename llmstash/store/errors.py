"""
llmstash Store - Error Taxonomy

Every failure surfaced by the store derives from StoreError so callers
can catch the whole family at once:

- NetworkError: registry unreachable or retry budget exhausted
- IntegrityError: downloaded bytes don't match the declared digest/size
- SchemaError: manifest shape, version or media type not understood
- ConflictError: unique constraint hit without overwrite intent
- NotFoundError: unknown model name/category or missing row
- StorageError: filesystem or database I/O failure
- StoreLockError: store lock could not be acquired
"""

from __future__ import annotations

from typing import Optional


class StoreError(Exception):
    """Base exception for store errors."""

    kind = "StoreError"


class NetworkError(StoreError):
    """Error talking to the remote registry.

    ``retryable`` marks transient failures (connection reset, timeouts,
    5xx, 429). ``attempts`` is filled in once the retry budget is spent.
    """

    kind = "NetworkError"

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = True,
        status_code: Optional[int] = None,
        attempts: int = 0,
    ):
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code
        self.attempts = attempts


class IntegrityError(StoreError):
    """Downloaded content doesn't match its declared digest or size."""

    kind = "IntegrityError"

    def __init__(self, message: str, expected: str = "", actual: str = ""):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class SchemaError(StoreError):
    """Remote data has an unexpected shape, version or media type."""

    kind = "SchemaError"


class ConflictError(StoreError):
    """Unique constraint violation without explicit overwrite intent."""

    kind = "ConflictError"


class NotFoundError(StoreError):
    """Unknown model name/category, or a missing row."""

    kind = "NotFoundError"


class StorageError(StoreError):
    """Filesystem or database I/O failure."""

    kind = "StorageError"


class StoreLockError(StoreError):
    """Error when store lock cannot be acquired."""

    kind = "StoreLockError"
