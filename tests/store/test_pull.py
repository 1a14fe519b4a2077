"""
Pull workflow tests.

Runs the full Store against a FakeRegistry: manifest resolution, layer
fetches, integrity checks, resume after interruption and the final
metadata commit.
"""

from pathlib import Path

import pytest

from llmstash.store import (
    IntegrityError,
    NetworkError,
    NotFoundError,
    PullState,
    SchemaError,
    StorageError,
)
from llmstash.store.config_entries import pull_status_key
from llmstash.store.models import ProgressStatus
from llmstash.store.pull_service import split_model_name
from tests.helpers.fixtures import (
    TestStoreContext,
    assert_blob_exists,
    assert_blob_not_exists,
    compute_sha256_from_content,
    detail_page_html,
    library_entry_html,
    library_page_html,
    tags_page_html,
)

WEIGHTS = b"GGUF" + b"\x00\x01" * 2048
TEMPLATE = b"{{ .System }} {{ .Prompt }}"
PARAMS = b'{"stop": ["<|eot_id|>"]}'
LAYERS = {"model": WEIGHTS, "template": TEMPLATE, "params": PARAMS}


def digest_of(content: bytes) -> str:
    return "sha256:" + compute_sha256_from_content(content)


class TestSplitModelName:
    @pytest.mark.parametrize("name,expected", [
        ("llama3", ("llama3", "latest")),
        ("llama3:8b", ("llama3", "8b")),
        ("alice/tiny:q4", ("alice/tiny", "q4")),
        ("registry.local:5000/tiny", ("registry.local:5000/tiny", "latest")),
    ])
    def test_split(self, name, expected):
        assert split_model_name(name, "latest") == expected


class TestPull:
    """Store.pull end to end."""

    def test_pull_installs_model(self, store_context):
        registry = store_context.registry
        _, manifest_digest = registry.add_model("llama3", "latest", LAYERS)
        store = store_context.store

        progress = []
        model = store.pull("llama3", progress_callback=lambda d, done, total: progress.append(d))

        assert model.name == "llama3:latest"
        assert model.hash == digest_of(WEIGHTS)
        assert model.size == len(WEIGHTS)
        assert Path(model.path) == store.blob_store.blob_path(model.hash)
        assert Path(model.path).read_bytes() == WEIGHTS
        assert Path(model.template).read_bytes() == TEMPLATE
        assert Path(model.params).read_bytes() == PARAMS
        assert model.license is None
        assert model.href == registry.manifest_url("llama3", "latest")
        assert set(progress) == {digest_of(c) for c in LAYERS.values()}

        assert store.get_model("llama3") == model
        assert store.metadata.get_status(
            pull_status_key("llama3:latest", manifest_digest)
        ) == ProgressStatus.COMPLETED
        assert store.pull_service.state == PullState.COMPLETED

    def test_repull_is_noop(self, store_context):
        registry = store_context.registry
        registry.add_model("llama3", "latest", LAYERS)
        store = store_context.store
        first = store.pull("llama3:latest")

        second = store.pull("llama3:latest")

        assert second == first
        assert registry.blob_downloads() == 3
        assert registry.count("GET", "/manifests/") == 1

    def test_repull_after_restart(self, store_context):
        registry = store_context.registry
        registry.add_model("llama3", "latest", LAYERS)
        first = store_context.store.pull("llama3")
        store_context.store.close()

        store_context.store = store_context.open_store()
        second = store_context.store.pull("llama3")

        assert second == first
        assert registry.blob_downloads() == 3

    def test_corrupted_blob(self, store_context):
        registry = store_context.registry
        registry.add_model("llama3", "latest", LAYERS, serve_blobs=False)
        registry.add_blob(TEMPLATE)
        registry.add_blob(PARAMS)
        registry.add_blob(WEIGHTS[:-1] + b"X", digest=digest_of(WEIGHTS))
        store = store_context.store

        with pytest.raises(IntegrityError):
            store.pull("llama3")

        assert store.get_model("llama3") is None
        assert_blob_not_exists(store, digest_of(WEIGHTS))
        assert not store.layout.blob_part_path(digest_of(WEIGHTS)).exists()
        assert store.pull_service.state == PullState.FAILED

    def test_interrupted_pull_resumes(self, store_context):
        registry = store_context.registry
        registry.add_model("llama3", "latest", LAYERS)
        weights_url = registry.blob_url("llama3", digest_of(WEIGHTS))
        # max_retries=2: three failed attempts exhaust the budget
        registry.fail(weights_url, 503, 503, 503)
        store = store_context.store

        with pytest.raises(NetworkError) as exc_info:
            store.pull("llama3")
        assert exc_info.value.attempts == 3
        assert store.get_model("llama3") is None
        assert_blob_exists(store, digest_of(TEMPLATE))
        assert_blob_not_exists(store, digest_of(WEIGHTS))

        before = registry.blob_downloads()
        model = store.pull("llama3")

        assert registry.blob_downloads() - before == 1
        assert model.hash == digest_of(WEIGHTS)
        assert Path(model.path).read_bytes() == WEIGHTS

    def test_dropped_stream_recovered_within_pull(self, store_context):
        registry = store_context.registry
        registry.add_model("llama3", "latest", LAYERS)
        weights_url = registry.blob_url("llama3", digest_of(WEIGHTS))
        registry.truncate(weights_url, 1000)
        store = store_context.store

        model = store.pull("llama3")

        assert Path(model.path).read_bytes() == WEIGHTS
        assert registry.count("GET", digest_of(WEIGHTS)) == 2
        assert store.pull_service.state == PullState.COMPLETED

    def test_unwritable_part_file_fails_pull(self, store_context):
        registry = store_context.registry
        registry.add_model("llama3", "latest", LAYERS)
        store = store_context.store
        store.init()
        store.layout.blob_part_path(digest_of(WEIGHTS)).mkdir(parents=True)

        with pytest.raises(StorageError):
            store.pull("llama3")

        assert store.pull_service.state == PullState.FAILED
        assert store.get_model("llama3") is None
        assert_blob_not_exists(store, digest_of(WEIGHTS))

    def test_interrupted_pull_matches_clean_pull(self):
        with TestStoreContext() as clean:
            clean.registry.add_model("llama3", "latest", LAYERS)
            expected = clean.store.pull("llama3")

        with TestStoreContext() as ctx:
            ctx.registry.add_model("llama3", "latest", LAYERS)
            ctx.registry.fail(ctx.registry.blob_url("llama3", digest_of(PARAMS)), 500, 500, 500)
            with pytest.raises(NetworkError):
                ctx.store.pull("llama3")
            resumed = ctx.store.pull("llama3")

        ignore = {"id", "path", "template", "license", "params"}
        assert resumed.model_dump(exclude=ignore) == expected.model_dump(exclude=ignore)
        assert Path(resumed.path).name == Path(expected.path).name

    def test_force_redownloads(self, store_context):
        registry = store_context.registry
        registry.add_model("llama3", "latest", LAYERS)
        store = store_context.store
        first = store.pull("llama3")

        second = store.pull("llama3", force=True)

        assert registry.blob_downloads() == 6
        assert second.id == first.id

    def test_unknown_model(self, store_context):
        with pytest.raises(NotFoundError):
            store_context.store.pull("does-not-exist")
        assert store_context.store.list_models() == []

    def test_bad_manifest(self, store_context):
        store_context.registry.add_raw_manifest("llama3", "latest", b'{"schemaVersion": 1}')
        with pytest.raises(SchemaError):
            store_context.store.pull("llama3")
        assert store_context.store.get_model("llama3") is None


class TestLayerReuse:
    """Blobs already on disk."""

    def test_shared_layers_downloaded_once(self, store_context):
        registry = store_context.registry
        registry.add_model("llama3", "latest", LAYERS)
        registry.add_model("llama3", "instruct", {"model": b"other weights", "template": TEMPLATE})
        store = store_context.store

        store.pull("llama3")
        store.pull("llama3:instruct")

        assert registry.count("GET", digest_of(TEMPLATE)) == 1
        assert len(store.list_models()) == 2

    def test_unrecorded_blob_is_verified(self, store_context):
        registry = store_context.registry
        registry.add_model("llama3", "latest", LAYERS)
        store = store_context.store
        store.init()
        path = store.blob_store.blob_path(digest_of(TEMPLATE))
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(TEMPLATE)

        store.pull("llama3")

        assert registry.count("GET", digest_of(TEMPLATE)) == 0

    def test_corrupt_unrecorded_blob_replaced(self, store_context):
        registry = store_context.registry
        registry.add_model("llama3", "latest", LAYERS)
        store = store_context.store
        store.init()
        path = store.blob_store.blob_path(digest_of(TEMPLATE))
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"bit rot")

        model = store.pull("llama3")

        assert registry.count("GET", digest_of(TEMPLATE)) == 1
        assert Path(model.template).read_bytes() == TEMPLATE

    def test_truncated_blob_of_installed_model_replaced(self, store_context):
        registry = store_context.registry
        registry.add_model("llama3", "latest", LAYERS)
        store = store_context.store
        first = store.pull("llama3")
        Path(first.template).write_bytes(TEMPLATE[:5])

        second = store.pull("llama3")

        assert registry.count("GET", digest_of(TEMPLATE)) == 2
        assert Path(second.template).read_bytes() == TEMPLATE
        assert registry.count("GET", digest_of(WEIGHTS)) == 1

    def test_truncated_blob_replaced_on_resume(self, store_context):
        registry = store_context.registry
        registry.add_model("llama3", "latest", LAYERS)
        registry.fail(registry.blob_url("llama3", digest_of(WEIGHTS)), 503, 503, 503)
        store = store_context.store
        with pytest.raises(NetworkError):
            store.pull("llama3")
        store.blob_store.blob_path(digest_of(TEMPLATE)).write_bytes(TEMPLATE[:5])

        model = store.pull("llama3")

        assert registry.count("GET", digest_of(TEMPLATE)) == 2
        assert Path(model.template).read_bytes() == TEMPLATE

    def test_changed_manifest_updates_row(self, store_context):
        registry = store_context.registry
        registry.add_model("llama3", "latest", LAYERS)
        store = store_context.store
        first = store.pull("llama3")

        new_weights = b"GGUF v2 weights"
        registry.add_model("llama3", "latest", {"model": new_weights, "template": TEMPLATE})
        second = store.pull("llama3")

        assert second.id == first.id
        assert second.hash == digest_of(new_weights)
        assert second.params is None
        assert registry.count("GET", digest_of(TEMPLATE)) == 1


class TestLibraryContext:
    """Tag and family metadata recorded with a pull."""

    def test_context_and_family_linked(self, store_context):
        registry = store_context.registry
        registry.add_page(
            "/library?sort=newest",
            library_page_html([library_entry_html("llama3", "Meta Llama 3")]),
        )
        registry.add_page("/library/llama3", detail_page_html("Llama", "readme"))
        registry.add_page(
            "/library/llama3/tags",
            tags_page_html([("llama3:latest", "4.7GB", "8K", "Text", "365c0bd3c000")]),
        )
        registry.add_model("llama3", "latest", LAYERS)
        store = store_context.store

        store.sync_library()
        model = store.pull("llama3")

        info = store.metadata.find_model_info("llama3")
        assert model.model_id == info.id
        assert model.context == "8K"
        assert model.input == "Text"

    def test_without_library_data(self, store_context):
        store_context.registry.add_model("llama3", "latest", LAYERS)
        model = store_context.store.pull("llama3")
        assert model.model_id is None
        assert model.context is None
