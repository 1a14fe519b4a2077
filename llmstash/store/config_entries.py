"""
llmstash Store - Typed Settings

The ``config`` table stores every value as raw bytes. ``ConfigKey`` names
the well-known entries and declares the type each one holds, so values are
serialized explicitly instead of being cast inside SQL.

Dynamic progress markers (one per pull) are not enumerated; they are
built with ``pull_status_key`` / ``pull_layers_key``.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any, Dict, Optional

from .models import LayerKind, ProgressStatus


class SettingType(str, Enum):
    TEXT = "text"
    INTEGER = "integer"
    STATUS = "status"
    JSON = "json"


class ConfigKey(Enum):
    """Well-known config entries: (name, type, seed value)."""

    INIT_STATUS = ("init_status", SettingType.STATUS, ProgressStatus.NOT_STARTED)
    INSERT_MODEL_INFO_COMPLETED = (
        "insert_model_info_completed", SettingType.STATUS, ProgressStatus.NOT_STARTED
    )
    MANIFEST_SCHEMA_VERSION = ("manifest_schema_version", SettingType.INTEGER, 2)
    MANIFEST_MEDIA_TYPE = (
        "manifest_media_type",
        SettingType.TEXT,
        "application/vnd.docker.distribution.manifest.v2+json",
    )
    MODEL_MEDIA_TYPE = ("model_media_type", SettingType.TEXT, "application/vnd.ollama.image.model")
    TEMPLATE_MEDIA_TYPE = (
        "template_media_type", SettingType.TEXT, "application/vnd.ollama.image.template"
    )
    LICENSE_MEDIA_TYPE = (
        "license_media_type", SettingType.TEXT, "application/vnd.ollama.image.license"
    )
    PARAMS_MEDIA_TYPE = ("params_media_type", SettingType.TEXT, "application/vnd.ollama.image.params")
    MODEL_FILE_EXT = ("model", SettingType.TEXT, "gguf")
    TEMPLATE_FILE_EXT = ("template", SettingType.TEXT, "txt")
    LICENSE_FILE_EXT = ("license", SettingType.TEXT, "txt")
    PARAMS_FILE_EXT = ("params", SettingType.TEXT, "json")

    def __init__(self, key: str, setting_type: SettingType, default: Any):
        self.key = key
        self.setting_type = setting_type
        self.default = default

    @property
    def is_status(self) -> bool:
        return self.setting_type == SettingType.STATUS


MEDIA_TYPE_KEYS: Dict[LayerKind, ConfigKey] = {
    LayerKind.MODEL: ConfigKey.MODEL_MEDIA_TYPE,
    LayerKind.TEMPLATE: ConfigKey.TEMPLATE_MEDIA_TYPE,
    LayerKind.LICENSE: ConfigKey.LICENSE_MEDIA_TYPE,
    LayerKind.PARAMS: ConfigKey.PARAMS_MEDIA_TYPE,
}

FILE_EXT_KEYS: Dict[LayerKind, ConfigKey] = {
    LayerKind.MODEL: ConfigKey.MODEL_FILE_EXT,
    LayerKind.TEMPLATE: ConfigKey.TEMPLATE_FILE_EXT,
    LayerKind.LICENSE: ConfigKey.LICENSE_FILE_EXT,
    LayerKind.PARAMS: ConfigKey.PARAMS_FILE_EXT,
}


def encode_value(setting_type: SettingType, value: Any) -> bytes:
    """Serialize a typed value for the ``config.value`` column."""
    if setting_type == SettingType.STATUS:
        return ProgressStatus(value).value.encode("utf-8")
    if setting_type == SettingType.INTEGER:
        return str(int(value)).encode("utf-8")
    if setting_type == SettingType.JSON:
        return json.dumps(value, sort_keys=True).encode("utf-8")
    return str(value).encode("utf-8")


def decode_value(setting_type: SettingType, raw: Optional[bytes]) -> Any:
    """Inverse of ``encode_value``. ``None`` stays ``None``."""
    if raw is None:
        return None
    text = bytes(raw).decode("utf-8")
    if setting_type == SettingType.STATUS:
        return ProgressStatus(text)
    if setting_type == SettingType.INTEGER:
        return int(text)
    if setting_type == SettingType.JSON:
        return json.loads(text)
    return text


def pull_status_key(model_name: str, manifest_digest: str) -> str:
    """Progress marker name for one pull of one manifest."""
    return f"pull_status:{model_name}@{manifest_digest}"


def pull_layers_key(model_name: str, manifest_digest: str) -> str:
    """Name of the entry listing the layer digests already verified."""
    return f"pull_layers:{model_name}@{manifest_digest}"
