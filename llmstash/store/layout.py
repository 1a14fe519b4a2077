"""
llmstash Store - Storage Layout Manager

Manages the on-disk layout:
- <root>/
  - config.json
  - blobs/sha256/<first2>/<sha256>        (content-addressed blobs)
  - blobs/sha256/<first2>/<sha256>.part   (in-flight downloads)
  - sqlite/llmstash.sqlite                (metadata database)
  - tmp/
  - .llmstash.lock
"""

from __future__ import annotations

import os
import re
import shutil
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

import filelock

from .errors import SchemaError, StorageError, StoreLockError

DB_FILENAME = "llmstash.sqlite"

_HEX_DIGEST = re.compile(r"^[0-9a-f]{64}$")


def digest_hex(digest: str) -> str:
    """
    Normalize a registry digest to its lowercase hex part.

    Accepts ``sha256:<hex>``, ``sha256-<hex>`` or bare ``<hex>``.

    Raises:
        SchemaError: If the digest uses another algorithm or is malformed.
    """
    value = digest.strip().lower()
    for prefix in ("sha256:", "sha256-"):
        if value.startswith(prefix):
            value = value[len(prefix):]
            break
    else:
        if ":" in value:
            raise SchemaError(f"Unsupported digest algorithm: {digest}")
    if not _HEX_DIGEST.match(value):
        raise SchemaError(f"Invalid SHA256 digest: {digest}")
    return value


class StoreLayout:
    """
    Manages the storage layout.

    Provides path derivation and an exclusive lock for store-level
    operations (init, forced re-init).
    """

    LOCK_TIMEOUT = 30.0  # seconds

    def __init__(self, root: Optional[Path] = None):
        """
        Initialize store layout.

        Args:
            root: Root directory for the store. Defaults to LLMSTASH_ROOT env var
                  or ~/.llmstash
        """
        if root is None:
            root = Path(os.environ.get("LLMSTASH_ROOT", Path.home() / ".llmstash"))

        self.root = Path(root).expanduser().resolve()

    # =========================================================================
    # Path Properties
    # =========================================================================

    @property
    def blobs_path(self) -> Path:
        """Path to blob store."""
        return self.root / "blobs" / "sha256"

    @property
    def sqlite_path(self) -> Path:
        """Path to the directory holding the metadata database."""
        return self.root / "sqlite"

    @property
    def db_path(self) -> Path:
        """Path to SQLite database."""
        return self.sqlite_path / DB_FILENAME

    @property
    def tmp_path(self) -> Path:
        """Path to temp directory."""
        return self.root / "tmp"

    @property
    def lock_file_path(self) -> Path:
        """Path to store lock file."""
        return self.root / ".llmstash.lock"

    # =========================================================================
    # Blob Paths
    # =========================================================================

    def blob_path(self, digest: str) -> Path:
        """Get path to a blob. The path depends on the digest only."""
        sha256 = digest_hex(digest)
        return self.blobs_path / sha256[:2] / sha256

    def blob_part_path(self, digest: str) -> Path:
        """Get path to a partial download for a blob."""
        return self.blob_path(digest).with_suffix(".part")

    def blob_lock_path(self, digest: str) -> Path:
        """Get path to the per-blob download lock."""
        return self.blob_path(digest).with_suffix(".lock")

    # =========================================================================
    # Locking
    # =========================================================================

    @contextmanager
    def lock(self, timeout: Optional[float] = None) -> Generator[None, None, None]:
        """
        Acquire exclusive lock on the store.

        Args:
            timeout: Lock timeout in seconds. Defaults to LOCK_TIMEOUT.

        Raises:
            StoreLockError: If lock cannot be acquired.
        """
        if timeout is None:
            timeout = self.LOCK_TIMEOUT

        self.lock_file_path.parent.mkdir(parents=True, exist_ok=True)

        lock = filelock.FileLock(self.lock_file_path)
        try:
            lock.acquire(timeout=timeout)
        except filelock.Timeout:
            raise StoreLockError(
                f"Could not acquire store lock within {timeout}s. "
                "Another operation may be in progress."
            )
        try:
            yield
        finally:
            lock.release()

    # =========================================================================
    # Initialization
    # =========================================================================

    def is_initialized(self) -> bool:
        """Check if store is initialized."""
        return self.db_path.exists()

    def ensure_directories(self) -> None:
        """Ensure all required directories exist."""
        if self.sqlite_path.exists() and not self.sqlite_path.is_dir():
            raise StorageError(f"Not a directory: {self.sqlite_path}")
        directories = [
            self.root,
            self.blobs_path,
            self.sqlite_path,
            self.tmp_path,
        ]
        try:
            for d in directories:
                d.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create store directories: {e}") from e

    def remove_database(self) -> None:
        """Delete the metadata database (and its WAL/SHM side files)."""
        for suffix in ("", "-wal", "-shm", "-journal"):
            path = self.db_path.with_name(self.db_path.name + suffix)
            path.unlink(missing_ok=True)

    # =========================================================================
    # Cleanup
    # =========================================================================

    def clean_tmp(self) -> int:
        """Clean temporary directory. Returns number of entries removed."""
        count = 0
        if self.tmp_path.exists():
            for item in self.tmp_path.iterdir():
                if item.is_dir():
                    shutil.rmtree(item, ignore_errors=True)
                else:
                    item.unlink(missing_ok=True)
                count += 1
        return count
