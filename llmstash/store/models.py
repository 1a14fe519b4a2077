"""
llmstash Store - Data Models

Pydantic v2 models for registry manifests and metadata rows.

- Manifest / ManifestLayer: registry JSON (schemaVersion, mediaType, layers)
- ModelInfoRecord: registry-level description of a model family
- ModelRecord: one locally pulled, runnable artifact
- RawManifestEntry: cached raw registry document keyed by href
"""

from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Enums
# =============================================================================

class LayerKind(str, Enum):
    """Blob classes a manifest may reference."""
    MODEL = "model"
    TEMPLATE = "template"
    LICENSE = "license"
    PARAMS = "params"


class ProgressStatus(str, Enum):
    """Progress marker values stored in the config table."""
    NOT_STARTED = "Not Started"
    IN_PROGRESS = "In Progress"
    COMPLETED = "Completed"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)


_STATUS_ORDER = [
    ProgressStatus.NOT_STARTED,
    ProgressStatus.IN_PROGRESS,
    ProgressStatus.COMPLETED,
]


class PullState(str, Enum):
    """States of a single pull."""
    NOT_STARTED = "not_started"
    RESOLVING_MANIFEST = "resolving_manifest"
    FETCHING_LAYERS = "fetching_layers"
    COMMITTING = "committing"
    COMPLETED = "completed"
    FAILED = "failed"


# =============================================================================
# Manifest Models
# =============================================================================

class ManifestLayer(BaseModel):
    """One blob reference inside a manifest."""
    model_config = ConfigDict(populate_by_name=True)

    media_type: str = Field(alias="mediaType")
    digest: str
    size: int = Field(ge=0)


class Manifest(BaseModel):
    """Registry manifest for a named model version."""
    model_config = ConfigDict(populate_by_name=True)

    schema_version: int = Field(alias="schemaVersion")
    media_type: Optional[str] = Field(default=None, alias="mediaType")
    config: Optional[ManifestLayer] = None
    layers: List[ManifestLayer] = Field(default_factory=list)


class ResolvedLayer(BaseModel):
    """Manifest layer tagged with its blob class."""
    kind: LayerKind
    media_type: str
    digest: str
    size: int


class ResolvedManifest(BaseModel):
    """Validated manifest plus where it came from."""
    name: str
    category: str
    href: str
    digest: str
    manifest: Manifest
    layers: List[ResolvedLayer]
    from_cache: bool = False

    def layer(self, kind: LayerKind) -> Optional[ResolvedLayer]:
        """First layer of the given kind, if any."""
        for layer in self.layers:
            if layer.kind == kind:
                return layer
        return None


# =============================================================================
# Metadata Rows
# =============================================================================

class RawManifestEntry(BaseModel):
    """Row of the raw document cache."""
    href: str
    digest: str
    raw_data: str
    updated_at: Optional[int] = None


class ModelInfoRecord(BaseModel):
    """Registry-level description of a model family."""
    id: Optional[str] = None
    title: str
    href: str
    raw_digest: str = ""
    introduction: str = ""
    pull_count: str = ""
    tag_count: str = ""
    summary: str = ""
    readme: str = ""
    updated_time: str = ""


class ModelRecord(BaseModel):
    """A concrete, locally pulled, runnable model."""
    model_config = ConfigDict(protected_namespaces=())

    id: Optional[str] = None
    name: str
    href: str
    path: Optional[str] = None
    template: Optional[str] = None
    license: Optional[str] = None
    params: Optional[str] = None
    size: Optional[int] = None
    context: Optional[str] = None
    input: Optional[str] = None
    hash: Optional[str] = None
    model_id: Optional[str] = None

    def blob_paths(self) -> List[str]:
        """Local paths of every blob the model references."""
        return [p for p in (self.path, self.template, self.license, self.params) if p]


class ModelTag(BaseModel):
    """One entry of a model family's tag listing."""
    name: str
    href: str = ""
    size: str = ""
    context: str = ""
    input: str = ""
    hash: str = ""
