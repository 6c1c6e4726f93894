"""
Shared fixtures for the Zabbix alert bridge tests.

In-memory SQLite (one shared connection), a fixed mock clock,
a scripted Zabbix JSON-RPC transport and a recording Telegram
client. Tests that run poll cycles must open their own sessions
with session_scope and close them before the cycle runs.
"""

from typing import Optional
from unittest.mock import AsyncMock

import pytest

from core.clock import MockClock
from core.config import IntegrationSettings
from monitoring.credentials import CredentialCipher
from monitoring.models import AlertRecord, AlertStatus
from monitoring.service import build_integration
from monitoring.zabbix.client import ZabbixClient
from storage.database import create_all_tables, create_database_engine, create_session_factory
from storage.repositories import MonitoringRepositories

from tests.monitoring.fakes import BEARER_TOKEN, START_TIME, FakeZabbix, RecordingTelegram


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def clock():
    """Mock clock fixed at a known instant."""
    return MockClock(START_TIME)


@pytest.fixture
def cipher():
    return CredentialCipher("test-secret")


@pytest.fixture
def engine():
    """In-memory database with all tables."""
    engine = create_database_engine("sqlite://")
    create_all_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def session(session_factory):
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def repos(session):
    return MonitoringRepositories.from_session(session)


@pytest.fixture
def settings():
    return IntegrationSettings(
        database_url="sqlite://",
        app_secret="test-secret",
        zabbix_url="https://zabbix.example.com/",
        zabbix_api_token=BEARER_TOKEN,
        zabbix_enabled=True,
        zabbix_poll_interval=5,
        telegram_bot_token="123456:TEST",
    )


@pytest.fixture
def fake_zabbix():
    return FakeZabbix()


@pytest.fixture
def telegram():
    return RecordingTelegram()


@pytest.fixture
def zabbix_client(fake_zabbix):
    """Real client with the HTTP transport replaced."""
    client = ZabbixClient(sleep=AsyncMock())
    client._post = fake_zabbix
    return client


@pytest.fixture
def integration(settings, session_factory, clock, zabbix_client, telegram):
    return build_integration(
        settings,
        session_factory,
        clock=clock,
        client=zabbix_client,
        default_telegram=telegram,
    )


@pytest.fixture
def make_record(clock):
    """Factory for AlertRecord with sensible defaults."""
    def _make(alert_id: str = "1001", **overrides) -> AlertRecord:
        values = dict(
            alert_id=alert_id,
            trigger_id="13001",
            host_id="10101",
            host="db-01",
            trigger_name="Disk space is low",
            severity=4,
            status=AlertStatus.PROBLEM,
            message="Disk space is low",
            event_time=clock.now(),
            update_time=clock.now(),
        )
        values.update(overrides)
        return AlertRecord(**values)
    return _make


@pytest.fixture
def make_group(repos, cipher):
    """Factory creating a NotificationGroup in the test session."""
    counter = {"n": 0}

    def _make(bot_token: Optional[str] = None, **fields):
        counter["n"] += 1
        values = {"name": f"group-{counter['n']}", "telegram_chat_id": "-100200300"}
        values.update(fields)
        return repos.groups.create(cipher, values, bot_token)
    return _make
