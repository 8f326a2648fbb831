"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for api_mock and sample resource imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))


@pytest.fixture(autouse=True)
def clean_provider_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep PROVIDER_* variables from the developer's shell out of tests."""
    import os

    for key in list(os.environ):
        if key.startswith("PROVIDER_"):
            monkeypatch.delenv(key, raising=False)
