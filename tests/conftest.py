"""
Pytest Configuration

Makes tests/support.py importable and keeps CLOUDDISK_* variables from the
developer's shell out of the config tests.
"""

import sys
from pathlib import Path

import pytest

TESTS_DIR = Path(__file__).parent
if str(TESTS_DIR) not in sys.path:
    sys.path.insert(0, str(TESTS_DIR))


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Remove CLOUDDISK_* environment variables for every test."""
    import os

    for key in list(os.environ):
        if key.startswith('CLOUDDISK_'):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def data_dir(tmp_path):
    """Server data directory."""
    return tmp_path / "server"


@pytest.fixture
def local_dir(tmp_path):
    """Client-side working directory."""
    path = tmp_path / "local"
    path.mkdir()
    return path
