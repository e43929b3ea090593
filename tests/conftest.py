"""
Root conftest.py for survey studio tests.

Shared fixtures: an isolated data directory per test, sample projects and
survey documents, and a preloaded image pool.
"""

import sys
from pathlib import Path

import pytest

# Ensure the repository root is in the path
repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from api.schema import ImageRef
from factories import make_document, make_record


# ============================================================================
# Pytest Hooks
# ============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "websocket: mark test as involving WebSocket communication",
    )
    config.addinivalue_line(
        "markers",
        "api: mark test as going through the HTTP surface",
    )


def pytest_collection_modifyitems(config, items):
    """
    Automatically mark tests based on their location or name.

    - Tests in *_api.py modules are marked with 'api'
    - Tests with 'websocket' in name are marked with 'websocket'
    """
    for item in items:
        if str(item.fspath).endswith("_api.py"):
            item.add_marker(pytest.mark.api)
        if "websocket" in item.name.lower():
            item.add_marker(pytest.mark.websocket)


# ============================================================================
# Shared Fixtures
# ============================================================================


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    """Point the backend at an empty data directory."""
    monkeypatch.setenv("SURVEY_STUDIO_DATA_DIR", str(tmp_path))
    monkeypatch.delenv("SURVEY_STUDIO_STORE_URL", raising=False)
    return tmp_path


@pytest.fixture
def image_pool():
    """Five preloaded street images."""
    return [
        ImageRef(name=f"street_{i}.jpg", url=f"https://images.example.org/street_{i}.jpg")
        for i in range(1, 6)
    ]


@pytest.fixture
def sample_document():
    return make_document()


@pytest.fixture
def sample_record():
    return make_record()
