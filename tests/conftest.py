"""Pytest configuration and fixtures."""

import json
import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for cloud_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

TESTDATA = tests_path / "testdata"


@pytest.fixture
def load_testdata():
    """Load a JSON response fixture by path relative to tests/testdata."""

    def _load(relative: str) -> dict:
        return json.loads((TESTDATA / relative).read_text(encoding="utf-8"))

    return _load
