"""Tests for typed config values and progress marker names."""

import pytest

from llmstash.store.config_entries import (
    FILE_EXT_KEYS,
    MEDIA_TYPE_KEYS,
    ConfigKey,
    SettingType,
    decode_value,
    encode_value,
    pull_layers_key,
    pull_status_key,
)
from llmstash.store.models import LayerKind, ProgressStatus


class TestEncoding:
    """encode_value / decode_value."""

    @pytest.mark.parametrize("setting_type,value", [
        (SettingType.TEXT, "gguf"),
        (SettingType.INTEGER, 2),
        (SettingType.STATUS, ProgressStatus.IN_PROGRESS),
        (SettingType.JSON, {"layers": ["sha256:a"]}),
    ])
    def test_roundtrip(self, setting_type, value):
        assert decode_value(setting_type, encode_value(setting_type, value)) == value

    def test_status_stored_as_text(self):
        assert encode_value(SettingType.STATUS, ProgressStatus.COMPLETED) == b"Completed"
        assert decode_value(SettingType.STATUS, b"Not Started") == ProgressStatus.NOT_STARTED

    def test_invalid_status_rejected(self):
        with pytest.raises(ValueError):
            encode_value(SettingType.STATUS, "Halfway")

    def test_none_stays_none(self):
        assert decode_value(SettingType.INTEGER, None) is None

    def test_memoryview_accepted(self):
        assert decode_value(SettingType.TEXT, memoryview(b"txt")) == "txt"


class TestKeys:
    """Well-known and dynamic keys."""

    def test_every_layer_kind_is_mapped(self):
        assert set(MEDIA_TYPE_KEYS) == set(LayerKind)
        assert set(FILE_EXT_KEYS) == set(LayerKind)

    def test_key_names_unique(self):
        names = [key.key for key in ConfigKey]
        assert len(names) == len(set(names))

    def test_status_keys(self):
        assert ConfigKey.INIT_STATUS.is_status
        assert not ConfigKey.MODEL_FILE_EXT.is_status

    def test_pull_keys_include_digest(self):
        status = pull_status_key("llama3:latest", "sha256:abc")
        layers = pull_layers_key("llama3:latest", "sha256:abc")
        assert status == "pull_status:llama3:latest@sha256:abc"
        assert layers != status
        assert pull_status_key("llama3:latest", "sha256:def") != status
