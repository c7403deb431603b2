import os
import shutil
from pathlib import Path

import pytest

TEST_DATA_DIR = Path("data-tests")

# questline.app builds its default instance at import time
os.environ["DATA_DIR"] = str(TEST_DATA_DIR.resolve())


@pytest.fixture(autouse=True)
def clean_test_env(monkeypatch):
    """Wipe data-tests/ and drop engine settings inherited from the shell or .env."""
    if TEST_DATA_DIR.exists():
        shutil.rmtree(TEST_DATA_DIR)
    (TEST_DATA_DIR / "sessions").mkdir(parents=True)
    for name in list(os.environ):
        if name.startswith("QUESTLINE_"):
            monkeypatch.delenv(name)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    yield
    # leave data-tests around after tests for inspection; CI can ignore it
