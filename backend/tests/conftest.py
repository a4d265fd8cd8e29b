"""
Shared test fixtures for chatbridge.
"""
import os

import pytest

# Keep real credentials and tokens out of the test run
os.environ.setdefault("TELEGRAM_ENABLED", "false")
os.environ.setdefault("WHATSAPP_ENABLED", "false")

from chatbridge.persistence.store import BridgeStore


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def db_path(tmp_path):
    return str(tmp_path / "chatbridge.db")


@pytest.fixture()
def store(db_path, clock):
    """Per-test store on a fresh SQLite file."""
    s = BridgeStore(db_path, clock=clock)
    yield s
    s.close()


@pytest.fixture()
def auth_dir(tmp_path):
    path = tmp_path / "whatsapp"
    path.mkdir()
    return path
