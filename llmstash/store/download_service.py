"""
llmstash Store - Download Service

Single HTTP download implementation shared by the blob store:
- Per-request sessions (thread-safe for concurrent downloads)
- Resume via Range headers into .part files
- SHA256 computed while streaming (covers any resumed prefix)
- HTML content-type error detection
- Split timeout (connect, read)
- Progress callbacks

HTTP failures are classified here so every caller agrees on what is
transient: connection errors, timeouts, 5xx and 429 are retryable.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional

import requests

from .errors import NetworkError, NotFoundError, StorageError

logger = logging.getLogger(__name__)

# Progress callback type: (downloaded_bytes, total_bytes)
ProgressCallback = Callable[[int, int], None]

USER_AGENT = "llmstash/1.0 (+https://github.com/llmstash)"


@dataclass
class DownloadResult:
    """Result of a file download."""
    sha256: str
    size: int
    resumed: bool = False


def is_transient(error: Exception) -> bool:
    """Retry predicate for ``retry_call``."""
    return isinstance(error, NetworkError) and error.retryable


def check_response(response: requests.Response, url: str) -> None:
    """
    Raise the store error matching a failed HTTP response.

    Raises:
        NotFoundError: 404
        NetworkError: any other non-2xx (retryable for 5xx and 429)
    """
    status = response.status_code
    if status < 400:
        return
    if status == 404:
        raise NotFoundError(f"Not found: {url}")
    retryable = status >= 500 or status == 429
    raise NetworkError(
        f"HTTP {status} for {url}", retryable=retryable, status_code=status
    )


_TRANSIENT_REQUEST_ERRORS = (
    requests.ConnectionError,
    requests.Timeout,
    # Connection dropped mid-body; the .part file is kept so a retry resumes.
    requests.exceptions.ChunkedEncodingError,
    requests.exceptions.ContentDecodingError,
)


def network_error(e: requests.RequestException, url: str) -> NetworkError:
    """Wrap a requests exception; transport-level failures are retryable."""
    status = e.response.status_code if e.response is not None else None
    if status is not None:
        retryable = status >= 500 or status == 429
    else:
        retryable = isinstance(e, _TRANSIENT_REQUEST_ERRORS)
    return NetworkError(
        f"Request failed for {url}: {e}", retryable=retryable, status_code=status
    )


def compute_sha256(path: Path, chunk_size: int = 1024 * 1024) -> str:
    """Compute SHA256 hash of a file."""
    sha256 = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            sha256.update(chunk)
    return sha256.hexdigest().lower()


class DownloadService:
    """HTTP download with resume, hashing and progress.

    Thread-safe: creates a new requests.Session per download call.
    """

    def __init__(
        self,
        chunk_size: int = 1024 * 1024,
        proxies: Optional[Dict[str, str]] = None,
    ):
        self.chunk_size = chunk_size
        self.proxies = proxies or {}

    def _session(self) -> requests.Session:
        session = requests.Session()
        session.headers.update({"User-Agent": USER_AGENT})
        if self.proxies:
            session.proxies.update(self.proxies)
        return session

    def download_to_file(
        self,
        url: str,
        dest: Path,
        *,
        progress_callback: Optional[ProgressCallback] = None,
        timeout: tuple = (15, 60),
        chunk_size: Optional[int] = None,
        resume: bool = True,
    ) -> DownloadResult:
        """Download URL to ``dest``, resuming whatever is already there.

        Args:
            url: HTTP/HTTPS URL to download
            dest: Destination file path (usually a ``.part`` file)
            progress_callback: Optional callback(downloaded_bytes, total_bytes)
            timeout: (connect_timeout, read_timeout) in seconds
            chunk_size: Override default chunk size
            resume: If True, resume partial downloads via Range header

        Returns:
            DownloadResult with the SHA256 and size of the whole file

        Raises:
            NetworkError: On transport errors or unexpected HTTP status
            NotFoundError: When the server answers 404
            StorageError: The destination cannot be read or written
        """
        chunk = chunk_size or self.chunk_size
        session = self._session()

        try:
            headers = {}
            mode = "wb"
            initial_size = 0

            if resume and dest.exists():
                initial_size = dest.stat().st_size
                if initial_size > 0:
                    headers["Range"] = f"bytes={initial_size}-"
                    mode = "ab"

            response = session.get(url, headers=headers, stream=True, timeout=timeout)

            # Range not satisfiable: the part file may already be complete
            if response.status_code == 416 and initial_size > 0:
                logger.info(f"[DownloadService] Range not satisfiable, re-verifying {dest.name}")
                return DownloadResult(
                    sha256=compute_sha256(dest, chunk), size=initial_size, resumed=True,
                )

            check_response(response, url)

            # Server ignored the range request: start over
            if initial_size > 0 and response.status_code == 200:
                logger.info(f"[DownloadService] Server ignored Range, restarting {dest.name}")
                initial_size = 0
                mode = "wb"

            content_type = response.headers.get("content-type", "")
            if "text/html" in content_type.lower():
                logger.error(f"[DownloadService] Received HTML content-type: {content_type}")
                raise NetworkError(
                    f"Download failed: server returned HTML instead of file for {url}",
                    retryable=False,
                    status_code=response.status_code,
                )

            content_length = response.headers.get("content-length")
            total_size = int(content_length) + initial_size if content_length else 0
            downloaded = initial_size

            sha256 = hashlib.sha256()

            # Hash the resumed prefix so the digest covers the entire file.
            if initial_size > 0:
                with open(dest, "rb") as f:
                    for existing_chunk in iter(lambda: f.read(chunk), b""):
                        sha256.update(existing_chunk)

            dest.parent.mkdir(parents=True, exist_ok=True)
            with open(dest, mode) as f:
                for data in response.iter_content(chunk_size=chunk):
                    if data:
                        f.write(data)
                        sha256.update(data)
                        downloaded += len(data)
                        if progress_callback:
                            progress_callback(downloaded, total_size)

            return DownloadResult(
                sha256=sha256.hexdigest().lower(),
                size=downloaded,
                resumed=initial_size > 0,
            )

        except requests.RequestException as e:
            # Keep the part file on network errors so the next attempt resumes
            raise network_error(e, url) from e
        except OSError as e:
            raise StorageError(f"Cannot write download to {dest}: {e}") from e
        finally:
            session.close()
