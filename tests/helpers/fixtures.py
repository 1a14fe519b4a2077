"""
Test fixtures and helpers for llmstash tests.

Provides:
- Deterministic blob and manifest generation
- FakeRegistry: in-process registry + library website for offline tests
- FakeSession / FakeResponse: stand-ins for requests.Session
- TestStoreContext: isolated store wired to a FakeRegistry
"""

from __future__ import annotations

import hashlib
import json
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union
from unittest.mock import patch

import requests
from requests.structures import CaseInsensitiveDict

REMOTE = "https://registry.test"
LIBRARY = "https://library.test"

MEDIA_TYPES = {
    "model": "application/vnd.ollama.image.model",
    "template": "application/vnd.ollama.image.template",
    "license": "application/vnd.ollama.image.license",
    "params": "application/vnd.ollama.image.params",
}


def compute_sha256_from_content(content: bytes) -> str:
    """Compute SHA256 hash from bytes."""
    return hashlib.sha256(content).hexdigest().lower()


def create_test_blob(content: str = "test content") -> Tuple[bytes, str]:
    """
    Create test blob content with deterministic hash.

    Returns:
        Tuple of (content_bytes, "sha256:<hex>")
    """
    content_bytes = content.encode("utf-8")
    return content_bytes, "sha256:" + compute_sha256_from_content(content_bytes)


def build_manifest(layers: Dict[str, bytes], schema_version: int = 2) -> Dict[str, Any]:
    """Manifest JSON for ``{kind: content}``."""
    return {
        "schemaVersion": schema_version,
        "mediaType": "application/vnd.docker.distribution.manifest.v2+json",
        "config": {
            "mediaType": "application/vnd.docker.container.image.v1+json",
            "digest": "sha256:" + compute_sha256_from_content(b"{}"),
            "size": 2,
        },
        "layers": [
            {
                "mediaType": MEDIA_TYPES[kind],
                "digest": "sha256:" + compute_sha256_from_content(content),
                "size": len(content),
            }
            for kind, content in layers.items()
        ],
    }


# =============================================================================
# Fake HTTP
# =============================================================================

class FakeResponse:
    """Minimal requests.Response stand-in."""

    def __init__(
        self,
        content: bytes = b"",
        status_code: int = 200,
        headers: Optional[Dict[str, str]] = None,
        url: str = "",
        fail_after: Optional[int] = None,
    ):
        self.content = content
        self.fail_after = fail_after
        self.status_code = status_code
        self.headers = CaseInsensitiveDict(headers or {})
        self.url = url

    @property
    def text(self) -> str:
        return self.content.decode("utf-8")

    def iter_content(self, chunk_size: int = 1024):
        """Stream the body; with ``fail_after`` the connection breaks after that many bytes."""
        sent = 0
        for i in range(0, len(self.content), chunk_size):
            chunk = self.content[i:i + chunk_size]
            if self.fail_after is not None and sent + len(chunk) > self.fail_after:
                head = chunk[:self.fail_after - sent]
                if head:
                    yield head
                raise requests.exceptions.ChunkedEncodingError(
                    "Connection broken: IncompleteRead"
                )
            sent += len(chunk)
            yield chunk

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)

    def close(self) -> None:
        pass


@dataclass
class FakeRegistry:
    """
    In-process registry and library website.

    Serves manifests, blobs (with Range support) and HTML pages, records
    every request, and lets tests inject failures per URL.
    """

    remote: str = REMOTE
    library: str = LIBRARY
    manifests: Dict[str, bytes] = field(default_factory=dict)
    blobs: Dict[str, bytes] = field(default_factory=dict)
    pages: Dict[str, str] = field(default_factory=dict)
    failures: Dict[str, List[Union[int, Exception]]] = field(default_factory=dict)
    truncations: Dict[str, List[int]] = field(default_factory=dict)
    calls: List[Tuple[str, str, Dict[str, str]]] = field(default_factory=list)
    send_digest_header: bool = True
    ignore_range: bool = False

    # -------------------------------------------------------------------------
    # Content
    # -------------------------------------------------------------------------

    def manifest_url(self, name: str, category: str) -> str:
        return f"{self.remote}/v2/library/{name}/manifests/{category}"

    def blob_url(self, name: str, digest: str) -> str:
        return f"{self.remote}/v2/library/{name}/blobs/{digest}"

    def add_model(
        self, name: str, category: str, layers: Dict[str, bytes], serve_blobs: bool = True
    ) -> Tuple[Dict[str, Any], str]:
        """Publish a model. Returns (manifest, manifest digest)."""
        manifest = build_manifest(layers)
        raw = json.dumps(manifest).encode("utf-8")
        self.manifests[self.manifest_url(name, category)] = raw
        if serve_blobs:
            for content in layers.values():
                self.add_blob(content)
        return manifest, "sha256:" + compute_sha256_from_content(raw)

    def add_raw_manifest(self, name: str, category: str, raw: bytes) -> None:
        self.manifests[self.manifest_url(name, category)] = raw

    def add_blob(self, content: bytes, digest: Optional[str] = None) -> str:
        digest = digest or "sha256:" + compute_sha256_from_content(content)
        self.blobs[digest] = content
        return digest

    def add_page(self, path: str, html: str) -> None:
        self.pages[f"{self.library}{path}"] = html

    def fail(self, url: str, *outcomes: Union[int, Exception]) -> None:
        """Make the next requests to ``url`` fail with a status or exception."""
        self.failures.setdefault(url, []).extend(outcomes)

    def truncate(self, url: str, *byte_counts: int) -> None:
        """Make the next blob responses for ``url`` break after the given byte counts."""
        self.truncations.setdefault(url, []).extend(byte_counts)

    # -------------------------------------------------------------------------
    # Request accounting
    # -------------------------------------------------------------------------

    def count(self, method: Optional[str] = None, contains: str = "") -> int:
        return sum(
            1 for m, url, _ in self.calls
            if (method is None or m == method) and contains in url
        )

    def blob_downloads(self) -> int:
        return self.count("GET", "/blobs/")

    # -------------------------------------------------------------------------
    # Serving
    # -------------------------------------------------------------------------

    def handle(self, method: str, url: str, headers: Optional[Dict[str, str]] = None) -> FakeResponse:
        headers = dict(headers or {})
        self.calls.append((method, url, headers))

        pending = self.failures.get(url)
        if pending:
            outcome = pending.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return FakeResponse(b"", status_code=outcome, url=url)

        if url in self.manifests:
            raw = self.manifests[url]
            response_headers = {"Content-Type": "application/vnd.docker.distribution.manifest.v2+json"}
            if self.send_digest_header:
                response_headers["Docker-Content-Digest"] = (
                    "sha256:" + compute_sha256_from_content(raw)
                )
            return FakeResponse(raw if method == "GET" else b"", 200, response_headers, url)

        if "/blobs/" in url:
            digest = url.rsplit("/", 1)[-1]
            if digest not in self.blobs:
                return FakeResponse(b"", 404, url=url)
            return self._serve_blob(self.blobs[digest], headers, url)

        if url in self.pages:
            return FakeResponse(
                self.pages[url].encode("utf-8"), 200, {"Content-Type": "text/html"}, url
            )

        return FakeResponse(b"", 404, url=url)

    def _serve_blob(self, content: bytes, headers: Dict[str, str], url: str) -> FakeResponse:
        pending = self.truncations.get(url)
        fail_after = pending.pop(0) if pending else None
        range_header = headers.get("Range")
        if range_header and not self.ignore_range:
            start = int(range_header.split("=")[1].rstrip("-"))
            if start >= len(content):
                return FakeResponse(b"", 416, url=url)
            body = content[start:]
            return FakeResponse(
                body,
                206,
                {"Content-Type": "application/octet-stream", "Content-Length": str(len(body))},
                url,
                fail_after=fail_after,
            )
        return FakeResponse(
            content,
            200,
            {"Content-Type": "application/octet-stream", "Content-Length": str(len(content))},
            url,
            fail_after=fail_after,
        )


class FakeSession:
    """requests.Session stand-in routing every call to a FakeRegistry."""

    def __init__(self, registry: FakeRegistry):
        self.registry = registry
        self.headers: Dict[str, str] = {}
        self.proxies: Dict[str, str] = {}

    def get(self, url, headers=None, stream=False, timeout=None, **kwargs):
        return self.registry.handle("GET", url, headers)

    def head(self, url, headers=None, timeout=None, allow_redirects=False, **kwargs):
        return self.registry.handle("HEAD", url, headers)

    def close(self) -> None:
        pass


def patch_session(registry: FakeRegistry):
    """Patch ``requests.Session`` so every client talks to ``registry``."""
    return patch("requests.Session", side_effect=lambda: FakeSession(registry))


# =============================================================================
# Library HTML
# =============================================================================

def library_entry_html(
    title: str,
    introduction: str,
    pulls: str = "1M",
    tags: str = "3",
    updated: str = "2 days ago",
) -> str:
    return (
        f'<li><a href="/library/{title}">'
        f'<div><div x-test-model-title title="{title}"><h2>{title}</h2>'
        f"<p>{introduction}</p></div></div>"
        f'<div><span><span x-test-pull-count>{pulls}</span></span>'
        f'<span><span x-test-tag-count>{tags}</span></span>'
        f'<span><span x-test-updated>{updated}</span></span></div>'
        f"</a></li>"
    )


def library_page_html(entries: List[str]) -> str:
    return f'<html><body><div id="repo"><ul>{"".join(entries)}</ul></div></body></html>'


def detail_page_html(summary: str, readme: str) -> str:
    return (
        f'<html><body><span id="summary-content">{summary}</span>'
        f'<div id="readme"><div id="display">{readme}</div></div></body></html>'
    )


def tags_page_html(rows: List[Tuple[str, str, str, str, str]]) -> str:
    """rows: (tag name, size, context, input, short hash)."""
    body = "".join(
        "<div>"
        f'<div><span><a href="/library/{name}">{name}</a></span></div>'
        f"<div><p>{size}</p><p>{context}</p></div>"
        f'<div><div class="col-span-2">{input_type}</div></div>'
        f'<div><div><span class="font-mono">{short_hash}</span></div></div>'
        "</div>"
        for name, size, context, input_type, short_hash in rows
    )
    return f"<html><body><section><div><div>{body}</div></div></section></body></html>"


# =============================================================================
# Store Context
# =============================================================================

class TestStoreContext:
    """
    Context manager for creating isolated test stores.

    Usage:
        with TestStoreContext() as ctx:
            ctx.registry.add_model("llama3", "latest", {...})
            model = ctx.store.pull("llama3")
    """

    __test__ = False

    def __init__(self, registry: Optional[FakeRegistry] = None, max_retries: int = 2):
        self.registry = registry or FakeRegistry()
        self.max_retries = max_retries
        self.tmpdir: Optional[tempfile.TemporaryDirectory] = None
        self.root: Optional[Path] = None
        self.store: Optional[Any] = None
        self._patcher = None
        self.sleeps: List[float] = []

    def __enter__(self) -> "TestStoreContext":
        self.tmpdir = tempfile.TemporaryDirectory()
        self.root = Path(self.tmpdir.name)
        self._patcher = patch_session(self.registry)
        self._patcher.start()
        self.store = self.open_store()
        return self

    def open_store(self):
        """Create a (new) Store on the same root, e.g. to simulate a restart."""
        from llmstash.config import LLMStashConfig, ModelSettings, RegistrySettings
        from llmstash.store import Store

        config = LLMStashConfig(
            root=self.root,
            registry=RegistrySettings(remote=self.registry.remote, library=self.registry.library),
            model=ModelSettings(max_workers=2),
        )
        config.registry.client.retry.max_retries = self.max_retries
        config.model.client.retry.max_retries = self.max_retries
        return Store(self.root, config=config, sleep=self.sleeps.append)

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.store is not None:
            self.store.close()
        if self._patcher:
            self._patcher.stop()
        if self.tmpdir:
            self.tmpdir.cleanup()
        return False


# =============================================================================
# Assertion Helpers
# =============================================================================

def assert_blob_exists(store: Any, digest: str) -> None:
    """Assert that a blob exists in the store."""
    assert store.blob_store.blob_exists(digest), f"Blob not found: {digest}"


def assert_blob_not_exists(store: Any, digest: str) -> None:
    """Assert that a blob does not exist in the store."""
    assert not store.blob_store.blob_exists(digest), f"Blob should not exist: {digest}"


def assert_index_in_sync(store: Any) -> None:
    """Search index row count equals model_info row count."""
    assert store.search_index.count() == store.metadata.count_model_info()
