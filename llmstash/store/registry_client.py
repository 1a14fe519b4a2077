"""
llmstash Store - Registry Client

Resolves ``name:category`` to a validated manifest.

Manifests are cached in ``library_raw_data`` keyed by their URL. Before
downloading, the client asks the registry for the current digest with a
HEAD request; a digest equal to the cached one reuses the cached document.
When the registry stays unreachable after the retry budget, a cached
manifest is served instead (degraded mode).
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Callable, Dict, List, Optional, Tuple

import requests
from pydantic import ValidationError

from ..utils.retry import RetryPolicy, retry_call
from .config_entries import ConfigKey
from .download_service import USER_AGENT, check_response, is_transient, network_error
from .errors import NetworkError, SchemaError
from .layout import digest_hex
from .models import LayerKind, Manifest, ResolvedLayer, ResolvedManifest

logger = logging.getLogger(__name__)

DEFAULT_REMOTE = "https://registry.ollama.ai"


def parse_manifest(
    raw: str,
    media_types: Dict[str, LayerKind],
    schema_version: int,
) -> Tuple[Manifest, List[ResolvedLayer]]:
    """
    Parse and validate a raw manifest document.

    Args:
        raw: Manifest JSON text
        media_types: Accepted layer media types mapped to their blob class
        schema_version: Required ``schemaVersion``

    Returns:
        (manifest, layers tagged with their kind)

    Raises:
        SchemaError: Bad JSON, unexpected version or media type, malformed
            digest, or no model layer.
    """
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise SchemaError(f"Manifest is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise SchemaError("Manifest must be a JSON object")

    try:
        manifest = Manifest.model_validate(data)
    except ValidationError as e:
        raise SchemaError(f"Malformed manifest: {e}") from e

    if manifest.schema_version != schema_version:
        raise SchemaError(
            f"Unsupported manifest schemaVersion {manifest.schema_version} "
            f"(expected {schema_version})"
        )

    layers = []
    for layer in manifest.layers:
        kind = media_types.get(layer.media_type)
        if kind is None:
            raise SchemaError(f"Unsupported layer media type: {layer.media_type}")
        layers.append(
            ResolvedLayer(
                kind=kind,
                media_type=layer.media_type,
                digest=f"sha256:{digest_hex(layer.digest)}",
                size=layer.size,
            )
        )

    if not any(layer.kind == LayerKind.MODEL for layer in layers):
        raise SchemaError("Manifest has no model layer")

    return manifest, layers


class RegistryClient:
    """
    Client for the OCI-style model registry.

    Features:
    - Manifest resolution with conditional fetch (HEAD + digest compare)
    - Schema and media type validation before anything is cached
    - Bounded retry for transient failures
    - Degraded mode: cached manifest when the registry is unreachable
    """

    def __init__(
        self,
        metadata,
        remote: str = DEFAULT_REMOTE,
        timeout: tuple = (15, 60),
        proxies: Optional[Dict[str, str]] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.metadata = metadata
        self.remote = remote.rstrip("/")
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

        self.session = requests.Session()
        self.session.headers.update({"User-Agent": USER_AGENT})
        if proxies:
            self.session.proxies.update(proxies)

    # =========================================================================
    # URLs
    # =========================================================================

    @staticmethod
    def repository(name: str) -> str:
        """Registry repository path; bare names live under ``library/``."""
        return name if "/" in name else f"library/{name}"

    def manifest_url(self, name: str, category: str) -> str:
        return f"{self.remote}/v2/{self.repository(name)}/manifests/{category}"

    def blob_url(self, name: str, digest: str) -> str:
        return f"{self.remote}/v2/{self.repository(name)}/blobs/sha256:{digest_hex(digest)}"

    # =========================================================================
    # Resolve
    # =========================================================================

    def resolve(self, name: str, category: str) -> ResolvedManifest:
        """
        Resolve ``name:category`` to a validated manifest.

        Raises:
            NotFoundError: The registry doesn't know the model/category
            SchemaError: The manifest isn't one we understand
            NetworkError: Registry unreachable and nothing cached
        """
        href = self.manifest_url(name, category)
        cached = self.metadata.get_raw(href)

        kwargs = {"sleep": self._sleep} if self._sleep else {}
        try:
            outcome = retry_call(
                lambda: self._fetch(href, cached.digest if cached else None),
                self.retry_policy,
                is_transient,
                label=f"manifest {name}:{category}",
                **kwargs,
            )
        except NetworkError as e:
            if cached is None or not e.retryable:
                raise
            logger.warning(
                f"[Registry] Registry unreachable after {e.attempts} attempt(s), "
                f"using cached manifest for {name}:{category}"
            )
            return self._build(name, category, href, cached.digest, cached.raw_data, True)

        digest, raw, not_modified = outcome.value
        if not_modified:
            logger.debug(f"[Registry] Manifest {name}:{category} unchanged ({digest[:19]})")
            return self._build(name, category, href, cached.digest, cached.raw_data, True)

        resolved = self._build(name, category, href, digest, raw, False)
        self.metadata.put_raw(href, digest, raw)
        logger.info(f"[Registry] Resolved {name}:{category} -> {digest}")
        return resolved

    def _fetch(self, href: str, cached_digest: Optional[str]) -> Tuple[str, str, bool]:
        """One attempt: (digest, raw manifest, served from cache)."""
        headers = {"Accept": self.metadata.get_setting(ConfigKey.MANIFEST_MEDIA_TYPE)}
        try:
            if cached_digest:
                head = self.session.head(
                    href, headers=headers, timeout=self.timeout, allow_redirects=True
                )
                check_response(head, href)
                remote_digest = head.headers.get("Docker-Content-Digest") or head.headers.get(
                    "ETag", ""
                ).strip('"')
                if remote_digest and remote_digest == cached_digest:
                    return cached_digest, "", True

            response = self.session.get(href, headers=headers, timeout=self.timeout)
            check_response(response, href)
        except requests.RequestException as e:
            raise network_error(e, href) from e

        body = response.content
        digest = response.headers.get("Docker-Content-Digest") or (
            "sha256:" + hashlib.sha256(body).hexdigest()
        )
        return digest, body.decode("utf-8", errors="replace"), False

    def _build(
        self, name: str, category: str, href: str, digest: str, raw: str, from_cache: bool
    ) -> ResolvedManifest:
        manifest, layers = parse_manifest(
            raw,
            self.metadata.media_types(),
            self.metadata.get_setting(ConfigKey.MANIFEST_SCHEMA_VERSION),
        )
        return ResolvedManifest(
            name=name,
            category=category,
            href=href,
            digest=digest,
            manifest=manifest,
            layers=layers,
            from_cache=from_cache,
        )
