"""Shared fixtures for IP What tests."""
import pytest

from ipwhat.config import get_settings
from ipwhat.db import DatabaseConnection, reset_db
from ipwhat.metrics import reset_metrics
from ipwhat.services.monitor import reset_monitor

from fakes import FakeClock, FakeTimer


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Point every test at its own database and default settings."""
    monkeypatch.setenv("DB_PATH", str(tmp_path / "ipwhat.db"))
    monkeypatch.setenv("DB_WAL_MODE", "false")
    monkeypatch.delenv("NOTIFY_WEBHOOK_URL", raising=False)
    get_settings.cache_clear()
    reset_db()
    reset_metrics()
    reset_monitor()
    yield
    get_settings.cache_clear()
    reset_db()
    reset_metrics()
    reset_monitor()


@pytest.fixture
async def db(tmp_path):
    connection = DatabaseConnection(db_path=tmp_path / "test.db", wal_mode=False)
    await connection.initialize()
    return connection


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_timer():
    return FakeTimer
