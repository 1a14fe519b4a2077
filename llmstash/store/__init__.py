"""
llmstash Store - Main Entry Point

This module provides the main Store facade for the local model cache.

Usage:
    from llmstash.store import Store

    store = Store()
    store.init()

    # Mirror the public library metadata (for search and tag info)
    store.sync_library()

    # Install a model
    model = store.pull("llama3", "latest")
    print(model.path, model.hash)

    # Find models
    ids = store.search("coding assistant")
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from ..config import LLMStashConfig, get_config
from ..utils.retry import RetryPolicy
from .blob_store import BlobStore, FetchResult
from .config_entries import ConfigKey
from .database import MetadataStore
from .download_service import DownloadResult, DownloadService
from .errors import (
    ConflictError,
    IntegrityError,
    NetworkError,
    NotFoundError,
    SchemaError,
    StorageError,
    StoreError,
    StoreLockError,
)
from .layout import StoreLayout
from .library_sync import LibrarySync, LibrarySyncReport
from .models import (
    LayerKind,
    Manifest,
    ModelInfoRecord,
    ModelRecord,
    ModelTag,
    ProgressStatus,
    PullState,
    ResolvedManifest,
)
from .pull_service import PullProgressCallback, PullService, split_model_name
from .registry_client import RegistryClient
from .search_index import SearchIndex

logger = logging.getLogger(__name__)


__all__ = [
    # Main facade
    "Store",

    # Layout
    "StoreLayout",

    # Services
    "BlobStore",
    "DownloadService",
    "LibrarySync",
    "MetadataStore",
    "PullService",
    "RegistryClient",
    "SearchIndex",

    # Models
    "LayerKind",
    "Manifest",
    "ModelInfoRecord",
    "ModelRecord",
    "ModelTag",
    "ProgressStatus",
    "PullState",
    "ResolvedManifest",

    # Results
    "DownloadResult",
    "FetchResult",
    "LibrarySyncReport",

    # Errors
    "StoreError",
    "NetworkError",
    "IntegrityError",
    "SchemaError",
    "ConflictError",
    "NotFoundError",
    "StorageError",
    "StoreLockError",
]


class Store:
    """
    Main facade for llmstash.

    Wires the metadata store, registry client, blob store, library sync and
    pull orchestrator together.
    """

    def __init__(
        self,
        root: Optional[Path] = None,
        config: Optional[LLMStashConfig] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        """
        Initialize the store.

        Args:
            root: Root directory for the store. Defaults to LLMSTASH_ROOT env var
                  or ~/.llmstash
            config: Configuration; loaded from ``<root>/config.json`` when omitted
            sleep: Sleep function used between retries (tests pass a no-op)
        """
        if config is None:
            config = LLMStashConfig.load(root) if root is not None else get_config()
        self.config = config
        self.layout = StoreLayout(root if root is not None else config.root)

        self.metadata = MetadataStore(self.layout.db_path)
        self.search_index = SearchIndex(self.metadata)
        self.metadata.add_observer(self.search_index)

        registry_http = config.registry.client
        model_http = config.model.client

        self.registry = RegistryClient(
            self.metadata,
            remote=config.registry.remote,
            timeout=registry_http.request_timeout,
            proxies=registry_http.proxies,
            retry_policy=RetryPolicy.from_settings(registry_http.retry),
            sleep=sleep,
        )
        self.library = LibrarySync(
            self.metadata,
            library=config.registry.library,
            timeout=registry_http.request_timeout,
            proxies=registry_http.proxies,
            retry_policy=RetryPolicy.from_settings(registry_http.retry),
            sleep=sleep,
        )
        self.blob_store = BlobStore(
            self.layout,
            downloader=DownloadService(
                chunk_size=model_http.chunk_size, proxies=model_http.proxies
            ),
            retry_policy=RetryPolicy.from_settings(model_http.retry),
            timeout=model_http.request_timeout,
            sleep=sleep,
        )
        self.pull_service = PullService(
            self.metadata,
            self.registry,
            self.blob_store,
            library=self.library,
            max_workers=config.model.max_workers,
            default_category=config.model.category,
        )
        self._ready = False

    # =========================================================================
    # Initialization
    # =========================================================================

    def is_initialized(self) -> bool:
        """Check if store is initialized."""
        return self.layout.is_initialized()

    def init(self, force: bool = False) -> int:
        """
        Initialize the store (idempotent).

        Args:
            force: Delete the metadata database and start over. Blobs are kept.

        Returns:
            Schema version after initialization.
        """
        with self.layout.lock():
            if force:
                logger.info("[Store] Forced re-initialization, removing metadata database")
                self.metadata.close()
                self.layout.remove_database()
            self.layout.ensure_directories()
            version = self.metadata.initialize()
            if self.metadata.get_status(ConfigKey.INIT_STATUS) != ProgressStatus.COMPLETED:
                self.metadata.advance_status(ConfigKey.INIT_STATUS, ProgressStatus.IN_PROGRESS)
                self.metadata.advance_status(ConfigKey.INIT_STATUS, ProgressStatus.COMPLETED)
                logger.info(f"[Store] Initialized store at {self.layout.root} (schema v{version})")
        self._ready = True
        return version

    def _open(self) -> None:
        """Make sure the schema is current before the first operation."""
        if not self._ready:
            self.init()

    def close(self) -> None:
        self.metadata.close()
        self._ready = False

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
        """Install ``name:category``; see PullService.pull."""
        self._open()
        return self.pull_service.pull(name, category, progress_callback, force)

    # =========================================================================
    # Models
    # =========================================================================

    def _model_name(self, name: str) -> str:
        base, category = split_model_name(name, self.config.model.category)
        return f"{base}:{category}"

    def get_model(self, name: str) -> Optional[ModelRecord]:
        """Look up a pulled model by ``name`` or ``name:category``."""
        self._open()
        return self.metadata.get_model(self._model_name(name))

    def list_models(self) -> List[ModelRecord]:
        self._open()
        return self.metadata.list_models()

    def remove_model(self, name: str) -> bool:
        """
        Delete a model row. Blobs stay in the store (other models may share them).

        Raises:
            NotFoundError: No such model.
        """
        self._open()
        model_name = self._model_name(name)
        if not self.metadata.delete_model(model_name):
            raise NotFoundError(f"Model not found: {model_name}")
        logger.info(f"[Store] Removed model {model_name}")
        return True

    def export_model(self, name: str, target_dir: Path) -> List[Path]:
        """
        Link (or copy) a model's blobs into ``target_dir``.

        Files are named ``<kind>-<sha256>.<ext>`` with the configured
        extension of each blob class.
        """
        model = self.get_model(name)
        if model is None:
            raise NotFoundError(f"Model not found: {self._model_name(name)}")

        target_dir = Path(target_dir)
        exported = []
        for kind in LayerKind:
            path = getattr(model, "path" if kind == LayerKind.MODEL else kind.value)
            if not path:
                continue
            sha256 = Path(path).name
            ext = self.metadata.file_extension(kind)
            exported.append(
                self.blob_store.export(sha256, target_dir / f"{kind.value}-{sha256}.{ext}")
            )
        return exported

    # =========================================================================
    # Library & Search
    # =========================================================================

    def sync_library(self, refresh: bool = False) -> LibrarySyncReport:
        self._open()
        return self.library.sync(refresh=refresh)

    def search(self, query: str, limit: int = 20) -> List[str]:
        """ModelInfo ids matching ``query``, best first."""
        self._open()
        return self.search_index.search(query, limit)

    def search_models(self, query: str, limit: int = 20) -> List[ModelInfoRecord]:
        """Like ``search`` but returns the ModelInfo rows."""
        return self.metadata.list_model_info(self.search(query, limit))

    def get_model_info(self, model_info_id: str) -> Optional[ModelInfoRecord]:
        self._open()
        return self.metadata.get_model_info(model_info_id)

    def rebuild_search_index(self) -> int:
        self._open()
        return self.search_index.rebuild()

    # =========================================================================
    # Maintenance
    # =========================================================================

    def verify_blobs(self) -> Tuple[List[str], List[str]]:
        """Re-hash every blob. Returns (valid, invalid) digests."""
        return self.blob_store.verify_all()

    def clean_partial(self) -> Dict[str, int]:
        """
        Remove interrupted downloads and temp files.

        Returns:
            Dict with counts of cleaned items
        """
        return {
            "partial": self.blob_store.clean_partial(),
            "tmp": self.layout.clean_tmp(),
        }
