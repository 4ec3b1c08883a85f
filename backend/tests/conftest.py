from pathlib import Path
import os
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ["ENV"] = "dev"

import pytest

from abuse.counter_store import reset_counters
from config.settings import get_settings

get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _reset_guards():
    """Rate-limit and lockout counters are process-wide; isolate every test."""
    reset_counters()
    yield
    reset_counters()
