"""
llmstash Store - Pull Service

Installs ``name:category`` locally:

    NotStarted -> ResolvingManifest -> FetchingLayers -> Committing -> Completed

Any non-terminal state can end in Failed.

Progress is kept in two config entries keyed by the model name and the
manifest digest: a status marker and the list of layer digests already
verified. An interrupted pull therefore resumes where it stopped, and a
pull of a manifest that has not changed since the last completed pull does
no network work beyond the manifest check.

The Model row is written (together with the Completed marker) only after
every layer is verified; a failed pull never leaves a row behind.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Tuple

from .config_entries import SettingType, pull_layers_key, pull_status_key
from .errors import StoreError
from .models import LayerKind, ModelRecord, ProgressStatus, PullState, ResolvedLayer, ResolvedManifest

logger = logging.getLogger(__name__)

# Progress callback type: (digest, downloaded_bytes, total_bytes)
PullProgressCallback = Callable[[str, int, int], None]


def split_model_name(name: str, default_category: str) -> Tuple[str, str]:
    """``llama3:8b`` -> (``llama3``, ``8b``); a bare name gets the default category."""
    base, sep, category = name.rpartition(":")
    if sep and base and "/" not in category:
        return base, category
    return name, default_category


class PullService:
    """Orchestrates manifest resolution, layer fetches and the metadata commit."""

    def __init__(
        self,
        metadata,
        registry,
        blob_store,
        library=None,
        max_workers: int = 4,
        default_category: str = "latest",
    ):
        self.metadata = metadata
        self.registry = registry
        self.blob_store = blob_store
        self.library = library
        self.max_workers = max_workers
        self.default_category = default_category
        self.state = PullState.NOT_STARTED

    def _set_state(self, state: PullState, model_name: str) -> None:
        self.state = state
        logger.debug(f"[Pull] {model_name}: {state.value}")

    # =========================================================================
    # Pull
    # =========================================================================

    def pull(
        self,
        name: str,
        category: Optional[str] = None,
        progress_callback: Optional[PullProgressCallback] = None,
        force: bool = False,
    ) -> ModelRecord:
        """
        Pull a model and record it.

        Args:
            name: Model name, optionally ``name:category``
            category: Category/tag; defaults to the configured category
            progress_callback: Optional callback(digest, downloaded, total)
            force: Re-download every layer even if present

        Returns:
            The stored ModelRecord

        Raises:
            NotFoundError, SchemaError, NetworkError, IntegrityError,
            StorageError: the pull failed; no Model row was written.
        """
        if category is None:
            name, category = split_model_name(name, self.default_category)
        model_name = f"{name}:{category}"

        try:
            self._set_state(PullState.RESOLVING_MANIFEST, model_name)
            resolved = self.registry.resolve(name, category)
            status_key = pull_status_key(model_name, resolved.digest)
            layers_key = pull_layers_key(model_name, resolved.digest)

            existing = self.metadata.get_model(model_name)
            if not force and self._is_complete(status_key, existing, resolved):
                logger.info(f"[Pull] {model_name} is up to date")
                self._set_state(PullState.COMPLETED, model_name)
                return existing

            if self.metadata.get_status(status_key) != ProgressStatus.COMPLETED:
                self.metadata.advance_status(status_key, ProgressStatus.IN_PROGRESS)

            self._set_state(PullState.FETCHING_LAYERS, model_name)
            verified = set(self.metadata.get_value(layers_key, SettingType.JSON) or [])
            pending = self._pending_layers(resolved, verified, existing, layers_key, force)
            self._fetch_layers(name, pending, verified, layers_key, progress_callback, force)

            self._set_state(PullState.COMMITTING, model_name)
            record = self._build_record(model_name, name, category, resolved)
            with self.metadata.transaction():
                stored = self.metadata.upsert_model(record, overwrite=True)
                self.metadata.advance_status(status_key, ProgressStatus.COMPLETED)

            self._set_state(PullState.COMPLETED, model_name)
            logger.info(f"[Pull] {model_name} installed ({resolved.digest})")
            return stored
        except StoreError as e:
            self._set_state(PullState.FAILED, model_name)
            logger.error(f"[Pull] {model_name} failed: {e.kind}: {e}")
            raise

    def _is_complete(
        self, status_key: str, existing: Optional[ModelRecord], resolved: ResolvedManifest
    ) -> bool:
        if existing is None:
            return False
        if self.metadata.get_status(status_key) != ProgressStatus.COMPLETED:
            return False
        if existing.hash != resolved.layer(LayerKind.MODEL).digest:
            return False
        return all(
            self.blob_store.blob_size(layer.digest) == layer.size for layer in resolved.layers
        )

    @staticmethod
    def _recorded_digests(existing: Optional[ModelRecord]) -> Set[str]:
        """Digests referenced by an existing Model row."""
        if existing is None:
            return set()
        digests = {f"sha256:{Path(p).name}" for p in existing.blob_paths()}
        if existing.hash:
            digests.add(existing.hash)
        return digests

    def _pending_layers(
        self,
        resolved: ResolvedManifest,
        verified: Set[str],
        existing: Optional[ModelRecord],
        layers_key: str,
        force: bool,
    ) -> List[ResolvedLayer]:
        """Layers that still need a download."""
        if force:
            return self._unique(resolved.layers)

        recorded = verified | self._recorded_digests(existing)
        pending = []
        for layer in self._unique(resolved.layers):
            present = self.blob_store.blob_exists(layer.digest)
            if (
                present
                and layer.digest in recorded
                and self.blob_store.blob_size(layer.digest) == layer.size
            ):
                continue
            if present:
                # Unrecorded or wrong size: trust it only after hashing.
                if self.blob_store.verify(layer.digest, layer.size):
                    self._record_verified(layer.digest, verified, layers_key)
                    continue
                logger.warning(f"[Pull] Blob {layer.digest[:19]} is corrupt, re-downloading")
                self.blob_store.remove_blob(layer.digest)
            pending.append(layer)
        return pending

    @staticmethod
    def _unique(layers: List[ResolvedLayer]) -> List[ResolvedLayer]:
        seen: Set[str] = set()
        unique = []
        for layer in layers:
            if layer.digest not in seen:
                seen.add(layer.digest)
                unique.append(layer)
        return unique

    def _record_verified(self, digest: str, verified: Set[str], layers_key: str) -> None:
        verified.add(digest)
        self.metadata.set_value(layers_key, SettingType.JSON, sorted(verified))

    def _fetch_layers(
        self,
        name: str,
        pending: List[ResolvedLayer],
        verified: Set[str],
        layers_key: str,
        progress_callback: Optional[PullProgressCallback],
        force: bool,
    ) -> None:
        """Fetch layers concurrently; raise the first failure after all settle."""
        if not pending:
            return

        def make_callback(digest: str):
            if progress_callback:
                return lambda d, t: progress_callback(digest, d, t)
            return None

        errors: List[Tuple[ResolvedLayer, StoreError]] = []
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures: Dict = {}
            for layer in pending:
                future = executor.submit(
                    self.blob_store.fetch,
                    layer.digest,
                    layer.size,
                    self.registry.blob_url(name, layer.digest),
                    make_callback(layer.digest),
                    force,
                )
                futures[future] = layer

            for future in as_completed(futures):
                layer = futures[future]
                try:
                    future.result()
                except StoreError as e:
                    logger.error(f"[Pull] Layer {layer.kind.value} {layer.digest[:19]} failed: {e}")
                    errors.append((layer, e))
                    continue
                self._record_verified(layer.digest, verified, layers_key)

        if errors:
            raise errors[0][1]

    # =========================================================================
    # Commit
    # =========================================================================

    def _build_record(
        self, model_name: str, name: str, category: str, resolved: ResolvedManifest
    ) -> ModelRecord:
        model_layer = resolved.layer(LayerKind.MODEL)

        def path_of(kind: LayerKind) -> Optional[str]:
            layer = resolved.layer(kind)
            return str(self.blob_store.blob_path(layer.digest)) if layer else None

        tag = self.library.lookup_tag(name, category) if self.library else None
        info = self.metadata.find_model_info(name)

        return ModelRecord(
            name=model_name,
            href=resolved.href,
            path=path_of(LayerKind.MODEL),
            template=path_of(LayerKind.TEMPLATE),
            license=path_of(LayerKind.LICENSE),
            params=path_of(LayerKind.PARAMS),
            size=model_layer.size,
            context=tag.context if tag else None,
            input=tag.input if tag else None,
            hash=model_layer.digest,
            model_id=info.id if info else None,
        )
