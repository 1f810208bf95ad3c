import os
import shutil
from pathlib import Path

import pytest

TEST_DATA_DIR = Path("data-tests")

# backend.app builds its default app at import time; keep it out of ./data
os.environ["DATA_DIR"] = str(TEST_DATA_DIR)


@pytest.fixture(autouse=True)
def clean_test_data():
    """Wipe and re-create data-tests/ before every test."""
    if TEST_DATA_DIR.exists():
        shutil.rmtree(TEST_DATA_DIR)
    TEST_DATA_DIR.mkdir()
    yield
    # leave data-tests around after tests for inspection; CI can ignore it


@pytest.fixture(autouse=True)
def no_credentials_from_env(monkeypatch):
    """Config tests must not pick up the developer's real keys."""
    for name in ("GEMINI_API_KEY", "GEMINI_MODEL", "UNSPLASH_ACCESS_KEY"):
        monkeypatch.delenv(name, raising=False)
