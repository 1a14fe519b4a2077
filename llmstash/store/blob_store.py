"""
llmstash Store - Blob Store

Content-addressable storage for model artifacts using SHA256 hashing.

Features:
- Deduplication by digest: one file per distinct content
- Downloads land in a .part file beside the final address and are only
  moved into place (atomic rename) after size and hash match
- Bounded retry with backoff for transient network failures
- Per-blob file lock so concurrent fetches of one digest serialize
- Progress callbacks
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import filelock

from ..utils.retry import RetryPolicy, retry_call
from .download_service import DownloadService, ProgressCallback, compute_sha256, is_transient
from .errors import IntegrityError, StorageError
from .layout import StoreLayout, digest_hex

logger = logging.getLogger(__name__)


@dataclass
class FetchResult:
    """Outcome of ``BlobStore.fetch``."""
    digest: str
    path: Path
    size: int
    downloaded: bool
    attempts: int = 0


class BlobStore:
    """
    Content-addressable blob store using SHA256.

    Blobs are stored at: <root>/blobs/sha256/<first2>/<full_hash>
    """

    def __init__(
        self,
        layout: StoreLayout,
        downloader: Optional[DownloadService] = None,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: tuple = (15, 60),
        sleep: Optional[Callable[[float], None]] = None,
    ):
        """
        Initialize blob store.

        Args:
            layout: Store layout manager
            downloader: HTTP download implementation
            retry_policy: Retry budget for transient failures
            timeout: (connect, read) timeout in seconds
            sleep: Sleep function used between retries (tests pass a no-op)
        """
        self.layout = layout
        self.downloader = downloader or DownloadService()
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = timeout
        self._sleep = sleep

    # =========================================================================
    # Blob Path Operations
    # =========================================================================

    def blob_path(self, digest: str) -> Path:
        """Get path to a blob."""
        return self.layout.blob_path(digest)

    def blob_exists(self, digest: str) -> bool:
        """Check if a blob exists."""
        return self.blob_path(digest).exists()

    def blob_size(self, digest: str) -> Optional[int]:
        """Get size of a blob in bytes. Returns None if not exists."""
        path = self.blob_path(digest)
        if path.exists():
            return path.stat().st_size
        return None

    # =========================================================================
    # Fetch
    # =========================================================================

    def fetch(
        self,
        digest: str,
        expected_size: Optional[int],
        url: str,
        progress_callback: Optional[ProgressCallback] = None,
        force: bool = False,
    ) -> FetchResult:
        """
        Download a blob into the store and verify it.

        Args:
            digest: Expected digest (``sha256:<hex>``)
            expected_size: Expected size in bytes (None skips the size check)
            url: Download URL
            progress_callback: Optional progress callback (downloaded, total)
            force: If True, re-download even if the blob exists

        Returns:
            FetchResult with the final path and the number of attempts

        Raises:
            IntegrityError: Size or hash mismatch (part file is deleted)
            NetworkError: Retry budget exhausted or non-retryable HTTP error
            NotFoundError: The registry doesn't have the blob
            StorageError: The blob or its part file cannot be written
        """
        sha256 = digest_hex(digest)
        final_path = self.blob_path(sha256)
        part_path = self.layout.blob_part_path(sha256)
        lock_path = self.layout.blob_lock_path(sha256)

        try:
            final_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create blob directory: {e}") from e

        with filelock.FileLock(lock_path):
            if final_path.exists() and not force:
                logger.debug(f"[BlobStore] Blob {sha256[:12]} already present")
                return FetchResult(
                    digest=f"sha256:{sha256}",
                    path=final_path,
                    size=final_path.stat().st_size,
                    downloaded=False,
                )

            if force:
                part_path.unlink(missing_ok=True)

            def attempt():
                return self.downloader.download_to_file(
                    url,
                    part_path,
                    progress_callback=progress_callback,
                    timeout=self.timeout,
                )

            kwargs = {"sleep": self._sleep} if self._sleep else {}
            outcome = retry_call(
                attempt,
                self.retry_policy,
                is_transient,
                label=f"blob {sha256[:12]}",
                **kwargs,
            )
            result = outcome.value

            if expected_size is not None and result.size != expected_size:
                part_path.unlink(missing_ok=True)
                raise IntegrityError(
                    f"Size mismatch for sha256:{sha256}: "
                    f"expected {expected_size} bytes, got {result.size}",
                    expected=str(expected_size),
                    actual=str(result.size),
                )
            if result.sha256 != sha256:
                part_path.unlink(missing_ok=True)
                raise IntegrityError(
                    f"Hash mismatch for {url}: expected sha256:{sha256}, got sha256:{result.sha256}",
                    expected=sha256,
                    actual=result.sha256,
                )

            self._finalize_download(part_path, final_path)
            logger.info(
                f"[BlobStore] Stored sha256:{sha256[:12]} ({result.size} bytes, "
                f"{outcome.attempts} attempt(s){', resumed' if result.resumed else ''})"
            )
            return FetchResult(
                digest=f"sha256:{sha256}",
                path=final_path,
                size=result.size,
                downloaded=True,
                attempts=outcome.attempts,
            )

    def _finalize_download(self, part_path: Path, blob_path: Path) -> None:
        """Move a verified download to its final blob location."""
        try:
            os.replace(part_path, blob_path)
        except OSError as e:
            raise StorageError(f"Cannot move {part_path} into place: {e}") from e

    # =========================================================================
    # Verification
    # =========================================================================

    def verify(self, digest: str, expected_size: Optional[int] = None) -> bool:
        """
        Verify a blob's integrity.

        Returns:
            True if blob exists and size/hash match
        """
        sha256 = digest_hex(digest)
        path = self.blob_path(sha256)
        if not path.exists():
            return False
        if expected_size is not None and path.stat().st_size != expected_size:
            return False
        return compute_sha256(path) == sha256

    def verify_all(self) -> Tuple[List[str], List[str]]:
        """
        Verify all blobs in the store.

        Returns:
            Tuple of (valid_hashes, invalid_hashes)
        """
        valid = []
        invalid = []
        for sha256 in self.list_blobs():
            if self.verify(sha256):
                valid.append(sha256)
            else:
                invalid.append(sha256)
        return valid, invalid

    # =========================================================================
    # Listing & Cleanup
    # =========================================================================

    def list_blobs(self) -> List[str]:
        """List all blob SHA256 hashes (excludes .part and .lock files)."""
        blobs = []
        blobs_path = self.layout.blobs_path
        if not blobs_path.exists():
            return blobs

        for prefix_dir in sorted(blobs_path.iterdir()):
            if not prefix_dir.is_dir():
                continue
            for blob_file in sorted(prefix_dir.iterdir()):
                if blob_file.is_file() and not blob_file.suffix:
                    blobs.append(blob_file.name)

        return blobs

    def remove_blob(self, digest: str) -> bool:
        """
        Remove a blob from the store.

        Returns:
            True if blob was removed, False if it didn't exist
        """
        path = self.blob_path(digest)
        if not path.exists():
            return False
        path.unlink()
        try:
            path.parent.rmdir()
        except OSError:
            pass  # Directory not empty
        return True

    def clean_partial(self) -> int:
        """
        Remove all partial downloads (.part files).

        Returns:
            Number of files removed
        """
        count = 0
        blobs_path = self.layout.blobs_path
        if not blobs_path.exists():
            return count

        for prefix_dir in blobs_path.iterdir():
            if not prefix_dir.is_dir():
                continue
            for part_file in prefix_dir.glob("*.part"):
                try:
                    part_file.unlink()
                    count += 1
                except OSError as e:
                    logger.warning(f"[BlobStore] Could not remove {part_file}: {e}")

        return count

    def get_total_size(self) -> int:
        """Get total size of all blobs in bytes."""
        return sum(self.blob_size(sha256) or 0 for sha256 in self.list_blobs())

    # =========================================================================
    # Export
    # =========================================================================

    def export(self, digest: str, target: Path, prefer_hardlink: bool = True) -> Path:
        """
        Place a copy of a blob at ``target``.

        A hardlink is tried first (same filesystem, no copy).
        """
        source = self.blob_path(digest)
        if not source.exists():
            raise StorageError(f"Blob not in store: {digest}")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.unlink(missing_ok=True)

        if prefer_hardlink:
            try:
                os.link(source, target)
                return target
            except OSError:
                pass  # Fall through to copy

        shutil.copy2(source, target)
        return target
