"""
Pytest Configuration and Global Fixtures.

This file is automatically loaded by pytest and provides:
- Shared fixtures available to all tests
- Pytest markers configuration
- Common test utilities
"""

import sys
from pathlib import Path
from typing import Generator

import pytest

# Make the project root importable without installation
sys.path.insert(0, str(Path(__file__).parent.parent))


# =============================================================================
# Re-export fixtures from helpers module
# =============================================================================

from tests.helpers.fixtures import (
    # Classes
    FakeRegistry,
    FakeResponse,
    FakeSession,
    TestStoreContext,
    # Functions
    build_manifest,
    compute_sha256_from_content,
    create_test_blob,
    patch_session,
    # Assertions
    assert_blob_exists,
    assert_blob_not_exists,
    assert_index_in_sync,
)


# =============================================================================
# Pytest Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests requiring multiple components"
    )


# =============================================================================
# Function-Scoped Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Keep every test away from the real ~/.llmstash and cached config."""
    from llmstash.config import reset_config

    monkeypatch.setenv("LLMSTASH_ROOT", str(tmp_path / "llmstash-root"))
    monkeypatch.delenv("LLMSTASH_PROXY", raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def fake_registry() -> FakeRegistry:
    """Create a fresh FakeRegistry instance."""
    return FakeRegistry()


@pytest.fixture
def store_context(fake_registry: FakeRegistry) -> Generator[TestStoreContext, None, None]:
    """Create an isolated store wired to the fake registry."""
    with TestStoreContext(registry=fake_registry) as ctx:
        yield ctx


@pytest.fixture
def metadata(tmp_path):
    """Initialized MetadataStore with the search index attached."""
    from llmstash.store.database import MetadataStore
    from llmstash.store.search_index import SearchIndex

    store = MetadataStore(tmp_path / "sqlite" / "test.sqlite")
    store.add_observer(SearchIndex(store))
    store.initialize()
    yield store
    store.close()


# =============================================================================
# Collection Hooks
# =============================================================================

def pytest_collection_modifyitems(config, items):
    """
    Automatically mark tests based on their location.

    - tests/store/* -> @pytest.mark.integration
    """
    for item in items:
        rel_path = Path(item.fspath).relative_to(Path(__file__).parent)
        if rel_path.parts and rel_path.parts[0] == "store":
            item.add_marker(pytest.mark.integration)
