"""
Tests for the Zabbix admin API.

============================================================
PURPOSE
============================================================
Drive the HTTP surface through FastAPI's TestClient against the
in-memory database, the scripted Zabbix transport and the
recording Telegram bot:

- Config is redacted on read and validated on write
- Manual poll, status, alert listing and acknowledgment
- Notification group CRUD and test sends
- Subscribers and the host proxy

============================================================
"""

import importlib
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from app import create_app
from monitoring.models import PollResult
from monitoring.poller import CYCLE_IN_PROGRESS
from monitoring.zabbix.client import ZabbixClient
from monitoring.zabbix.exceptions import ZabbixConnectionError
from storage.database import session_scope
from storage.repositories import MonitoringRepositories

from tests.monitoring.fakes import BEARER_TOKEN, FakeZabbix


BASE = "/api/zabbix"


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def api(settings, integration):
    app = create_app(settings, integration=integration, start_scheduler=False)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def seed_alerts(session_factory, make_record):
    """Two open alerts and one resolved one."""
    with session_scope(session_factory) as session:
        alerts = MonitoringRepositories.from_session(session).alerts
        alerts.upsert(make_record("1001", host="db-01", severity=4))
        alerts.upsert(make_record("1002", host="web-01", severity=3))
        alerts.upsert(make_record("1003", host="db-02", severity=4))
        alerts.reconcile_resolved({"1001", "1002"}, make_record().update_time)


@pytest.fixture
def throwaway_zabbix(monkeypatch):
    """Transport used by the throwaway client of /test-connection."""
    fake = FakeZabbix()

    def factory(**kwargs):
        client = ZabbixClient(sleep=AsyncMock(), **kwargs)
        client._post = fake
        return client

    router_module = importlib.import_module("monitoring.api.router")
    monkeypatch.setattr(router_module, "ZabbixClient", factory)
    return fake


def create_group(api, **fields):
    body = {"name": "ops", "telegram_chat_id": "-100200300"}
    body.update(fields)
    response = api.post(f"{BASE}/groups", json=body)
    assert response.status_code == 201, response.text
    return response.json()["data"]


# ============================================================
# CONFIG
# ============================================================

class TestConfig:

    def test_get_config_is_redacted(self, api):
        response = api.get(f"{BASE}/config")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["url"].startswith("https://zabbix.example.com")
        assert data["has_token"] is True
        assert data["has_password"] is False
        assert BEARER_TOKEN not in response.text

    def test_update_config(self, api, fake_zabbix):
        response = api.put(f"{BASE}/config", json={"poll_interval": 10, "username": "admin"})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["poll_interval"] == 10
        assert body["data"]["username"] == "admin"
        assert body["data"]["client_ready"] is True
        assert fake_zabbix.count("apiinfo.version") == 1

        status = api.get(f"{BASE}/status").json()["data"]
        assert status["scheduler"]["interval_minutes"] == 10
        assert status["scheduler"]["cron_expression"] == "*/10 * * * *"

    def test_secrets_never_echoed(self, api):
        response = api.put(f"{BASE}/config", json={"password": "s3cret", "username": "admin"})

        assert response.status_code == 200
        assert "s3cret" not in response.text
        assert response.json()["data"]["has_password"] is True

    def test_invalid_url_rejected(self, api):
        response = api.put(f"{BASE}/config", json={"url": "zabbix.local"})

        assert response.status_code == 400
        assert response.json()["success"] is False
        assert response.json()["message"] == "Invalid Zabbix URL"

    def test_enabled_without_credentials_rejected(self, api):
        response = api.put(f"{BASE}/config", json={"api_token": "", "enabled": True})

        assert response.status_code == 400
        assert "credentials are required" in response.json()["message"]
        assert api.get(f"{BASE}/config").json()["data"]["has_token"] is True

    @pytest.mark.parametrize("interval", [0, 61])
    def test_poll_interval_bounds(self, api, interval):
        response = api.put(f"{BASE}/config", json={"poll_interval": interval})
        assert response.status_code == 422

    def test_disable_stops_scheduler(self, api):
        api.put(f"{BASE}/config", json={"poll_interval": 5})

        response = api.put(f"{BASE}/config", json={"enabled": False})

        assert response.status_code == 200
        assert response.json()["data"]["client_ready"] is False
        status = api.get(f"{BASE}/status").json()["data"]
        assert status["scheduler"]["running"] is False


class TestConnectionCheck:

    def test_stored_credentials(self, api, throwaway_zabbix):
        response = api.post(f"{BASE}/test-connection")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["success"] is True
        assert data["version"] == "6.4.0"
        assert throwaway_zabbix.count("host.get") == 1

    def test_override_credentials(self, api, throwaway_zabbix):
        response = api.post(
            f"{BASE}/test-connection",
            json={"api_token": "", "username": "admin", "password": "zabbix"},
        )

        assert response.status_code == 200
        login = [c for c in throwaway_zabbix.calls if c["method"] == "user.login"][0]
        assert login["params"] == {"username": "admin", "password": "zabbix"}
        assert "zabbix" not in response.json()["data"].values()

    def test_unreachable(self, api, throwaway_zabbix):
        throwaway_zabbix.fail("apiinfo.version", ZabbixConnectionError("Connection refused"))

        response = api.post(f"{BASE}/test-connection")

        assert response.status_code == 400
        body = response.json()
        assert body["message"] == "Connection test failed"
        assert "refused" in body["error"]

    def test_shared_client_untouched(self, api, throwaway_zabbix, integration):
        api.post(f"{BASE}/test-connection")
        assert not integration.client.initialized

    def test_no_credentials(self, api, throwaway_zabbix):
        response = api.post(f"{BASE}/test-connection", json={"api_token": ""})

        assert response.status_code == 400
        assert response.json()["message"] == "No credentials to test"
        assert throwaway_zabbix.calls == []


# ============================================================
# POLLING AND STATUS
# ============================================================

class TestPollNow:

    def test_poll_now(self, api, fake_zabbix, telegram):
        fake_zabbix.add_problem("2001")
        create_group(api)

        response = api.post(f"{BASE}/poll-now")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["success"] is True
        assert data["trigger"] == "manual"
        assert data["new_alert_ids"] == ["2001"]
        assert data["notifications_sent"] == 1
        assert len(telegram.sent) == 1

    def test_poll_now_disabled(self, api, fake_zabbix):
        api.put(f"{BASE}/config", json={"enabled": False})

        response = api.post(f"{BASE}/poll-now")

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["message"] == "Zabbix integration is disabled"
        assert fake_zabbix.count("problem.get") == 0

    def test_poll_now_without_url(self, api, integration, fake_zabbix):
        with session_scope(integration.session_factory) as session:
            repos = MonitoringRepositories.from_session(session)
            config = repos.config.get_or_create_default(integration.settings, integration.cipher)
            config.url = None

        response = api.post(f"{BASE}/poll-now")

        assert response.status_code == 400
        assert response.json()["message"] == "Zabbix URL not configured"
        assert fake_zabbix.calls == []

    def test_poll_now_while_cycle_running(self, api, integration, clock, monkeypatch):
        running = PollResult(cycle_id="c1", trigger="manual", started_at=clock.now(),
                             skipped=True, error=CYCLE_IN_PROGRESS)
        monkeypatch.setattr(integration.orchestrator, "run_cycle", AsyncMock(return_value=running))

        response = api.post(f"{BASE}/poll-now")

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is False
        assert body["error"] == CYCLE_IN_PROGRESS
        assert body["data"]["skipped"] is True

    def test_poll_failure(self, api, fake_zabbix):
        fake_zabbix.fail("apiinfo.version", ZabbixConnectionError("Connection refused"))

        response = api.post(f"{BASE}/poll-now")

        assert response.status_code == 500
        assert response.json()["message"] == "Poll failed"

    def test_status(self, api, fake_zabbix):
        fake_zabbix.add_problem("2001")
        api.post(f"{BASE}/poll-now")

        response = api.get(f"{BASE}/status")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["client"]["initialized"] is True
        assert data["client"]["auth_mode"] == "api_token"
        assert data["poller"]["state"] == "IDLE"
        assert data["poller"]["last_result"]["alerts_fetched"] == 1
        assert data["circuit_breaker"]["state"] == "CLOSED"
        assert data["telegram_available"] is True
        assert data["alerts"] == {"OK": 0, "PROBLEM": 1}


# ============================================================
# ALERTS
# ============================================================

class TestAlerts:

    def test_list_all(self, api, seed_alerts):
        data = api.get(f"{BASE}/alerts").json()["data"]
        assert data["total"] == 3
        assert {item["alert_id"] for item in data["items"]} == {"1001", "1002", "1003"}

    def test_filters(self, api, seed_alerts):
        by_severity = api.get(f"{BASE}/alerts", params={"severity": 4}).json()["data"]
        assert {item["alert_id"] for item in by_severity["items"]} == {"1001", "1003"}

        by_host = api.get(f"{BASE}/alerts", params={"host": "db"}).json()["data"]
        assert by_host["total"] == 2

        resolved = api.get(f"{BASE}/alerts", params={"resolved": True}).json()["data"]
        assert [item["alert_id"] for item in resolved["items"]] == ["1003"]
        assert resolved["items"][0]["status"] == "OK"

        open_problems = api.get(f"{BASE}/alerts", params={"status": "PROBLEM"}).json()["data"]
        assert open_problems["total"] == 2

    def test_pagination(self, api, seed_alerts):
        data = api.get(f"{BASE}/alerts", params={"limit": 1, "offset": 1}).json()["data"]
        assert len(data["items"]) == 1
        assert data["total"] == 3
        assert (data["limit"], data["offset"]) == (1, 1)

    def test_invalid_status(self, api):
        assert api.get(f"{BASE}/alerts", params={"status": "BROKEN"}).status_code == 422

    def test_get_alert(self, api, seed_alerts):
        response = api.get(f"{BASE}/alerts/1001")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["host"] == "db-01"
        assert "raw_payload" in data

    def test_get_missing_alert(self, api):
        response = api.get(f"{BASE}/alerts/404404")

        assert response.status_code == 404
        assert response.json()["message"] == "Alert 404404 not found"

    def test_acknowledge(self, api, fake_zabbix, clock):
        fake_zabbix.add_problem("2001")
        api.post(f"{BASE}/poll-now")

        response = api.post(
            f"{BASE}/alerts/2001/acknowledge",
            json={"message": "on it", "acknowledged_by": "ops"},
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["acknowledged"] is True
        assert data["acknowledged_by"] == "ops"
        ack = [c for c in fake_zabbix.calls if c["method"] == "event.acknowledge"][0]
        assert ack["params"] == {"eventids": ["2001"], "action": 6, "message": "on it"}

    def test_acknowledge_requires_client(self, api, seed_alerts):
        response = api.post(f"{BASE}/alerts/1001/acknowledge")

        assert response.status_code == 400
        assert response.json()["message"] == "Zabbix client not initialized"
        assert api.get(f"{BASE}/alerts/1001").json()["data"]["acknowledged"] is False

    def test_acknowledge_locally(self, api, seed_alerts, fake_zabbix):
        response = api.post(f"{BASE}/alerts/1001/acknowledge", json={"sync_upstream": False})

        assert response.status_code == 200
        assert response.json()["data"]["acknowledged"] is True
        assert fake_zabbix.count("event.acknowledge") == 0

    def test_acknowledge_upstream_failure(self, api, fake_zabbix):
        fake_zabbix.add_problem("2001")
        api.post(f"{BASE}/poll-now")
        denied = {"code": -32500, "message": "Application error.",
                  "data": "No permissions to referred object."}
        # Non-auth API errors are retried up to max_retries
        fake_zabbix.fail("event.acknowledge", denied, denied, denied)

        response = api.post(f"{BASE}/alerts/2001/acknowledge")

        assert response.status_code == 500
        assert "No permissions" in response.json()["error"]
        assert fake_zabbix.count("event.acknowledge") == 3
        assert api.get(f"{BASE}/alerts/2001").json()["data"]["acknowledged"] is False

    def test_check_rules(self, api, seed_alerts):
        create_group(api, name="databases", host_patterns=["db-*"])
        create_group(api, name="web", host_patterns=["web-*"])

        response = api.post(f"{BASE}/alerts/1001/check")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["eligible_count"] == 1
        by_name = {group["group_name"]: group for group in data["groups"]}
        assert by_name["databases"]["eligible"] is True
        assert by_name["web"]["matched"] is False
        assert by_name["web"]["reasons"]


# ============================================================
# NOTIFICATION GROUPS
# ============================================================

class TestGroups:

    def test_create_and_list(self, api):
        created = create_group(api, severity_levels=[4, 3, 4], telegram_bot_token="777:group")

        assert created["severity_levels"] == [3, 4]
        assert created["has_bot_token"] is True
        assert "777:group" not in str(created)

        groups = api.get(f"{BASE}/groups").json()["data"]
        assert [group["id"] for group in groups] == [created["id"]]

    def test_create_requires_destination(self, api):
        response = api.post(f"{BASE}/groups", json={"name": "nowhere"})

        assert response.status_code == 400
        assert "telegram_chat_id" in response.json()["message"]

    def test_create_rejects_bad_severity(self, api):
        response = api.post(
            f"{BASE}/groups",
            json={"name": "ops", "telegram_chat_id": "-1", "severity_levels": [7]},
        )
        assert response.status_code == 422

    def test_duplicate_name(self, api):
        create_group(api)

        response = api.post(f"{BASE}/groups", json={"name": "ops", "telegram_chat_id": "-1"})

        assert response.status_code == 400
        assert response.json()["error"] == "name=ops already exists"
        assert len(api.get(f"{BASE}/groups").json()["data"]) == 1

    def test_get_group(self, api):
        created = create_group(api)

        response = api.get(f"{BASE}/groups/{created['id']}")

        assert response.status_code == 200
        assert response.json()["data"]["name"] == "ops"

    @pytest.mark.parametrize("group_id", ["not-a-uuid", "6f1c2e1a-9a57-4c1b-9d0e-3b7c7a0e2f11"])
    def test_missing_group(self, api, group_id):
        assert api.get(f"{BASE}/groups/{group_id}").status_code == 404

    def test_update_group(self, api):
        created = create_group(api, telegram_bot_token="777:group")

        response = api.put(
            f"{BASE}/groups/{created['id']}",
            json={"priority": 50, "min_notification_interval": 15, "telegram_bot_token": ""},
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["priority"] == 50
        assert data["settings"]["min_notification_interval"] == 15
        assert data["has_bot_token"] is False
        assert data["name"] == "ops"

    def test_update_cannot_remove_every_destination(self, api):
        created = create_group(api)

        response = api.put(f"{BASE}/groups/{created['id']}", json={"telegram_chat_id": None})

        assert response.status_code == 400

    def test_delete_group(self, api):
        created = create_group(api)

        response = api.delete(f"{BASE}/groups/{created['id']}")

        assert response.status_code == 200
        assert api.get(f"{BASE}/groups/{created['id']}").status_code == 404

    def test_test_send(self, api, telegram):
        created = create_group(api, min_notification_interval=60)

        response = api.post(f"{BASE}/groups/{created['id']}/test")

        assert response.status_code == 200
        assert response.json()["data"]["sent"] == 1
        chat_id, text, _ = telegram.sent[0]
        assert chat_id == "-100200300"
        assert "Test Alert" in text
        stats = api.get(f"{BASE}/groups/{created['id']}").json()["data"]["stats"]
        assert stats["notifications_sent"] == 0

    def test_test_send_failure(self, api, telegram):
        created = create_group(api)
        telegram.is_configured = False

        response = api.post(f"{BASE}/groups/{created['id']}/test")

        assert response.status_code == 500
        assert "no bot token available" in response.json()["error"]


# ============================================================
# SUBSCRIBERS AND HOSTS
# ============================================================

class TestSubscribers:

    def test_upsert_and_list(self, api):
        response = api.put(
            f"{BASE}/subscribers/alice",
            json={"display_name": "Alice", "telegram_id": "111"},
        )

        assert response.status_code == 200
        assert response.json()["data"]["reachable"] is True

        api.put(f"{BASE}/subscribers/alice", json={"telegram_id": None})
        subscribers = api.get(f"{BASE}/subscribers").json()["data"]
        assert len(subscribers) == 1
        assert subscribers[0]["display_name"] == "Alice"
        assert subscribers[0]["reachable"] is False


class TestHosts:

    def test_requires_client(self, api):
        response = api.get(f"{BASE}/hosts")
        assert response.status_code == 400

    def test_lists_hosts(self, api, fake_zabbix):
        fake_zabbix.add_problem("2001", host="db-01")
        fake_zabbix.add_problem("2002", host="web-01")
        api.post(f"{BASE}/poll-now")

        data = api.get(f"{BASE}/hosts").json()["data"]

        assert data["total"] == 2
        assert {host["host"] for host in data["items"]} == {"db-01", "web-01"}

    def test_host_groups_require_client(self, api, fake_zabbix):
        response = api.get(f"{BASE}/host-groups")

        assert response.status_code == 400
        assert fake_zabbix.count("hostgroup.get") == 0

    def test_lists_host_groups(self, api, fake_zabbix):
        fake_zabbix.host_groups = [
            {"groupid": "2", "name": "Linux servers"},
            {"groupid": "4", "name": "Databases"},
        ]
        api.post(f"{BASE}/poll-now")

        response = api.get(f"{BASE}/host-groups")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["total"] == 2
        assert [group["name"] for group in data["items"]] == ["Linux servers", "Databases"]
        params = [c for c in fake_zabbix.calls if c["method"] == "hostgroup.get"][0]["params"]
        assert params == {"output": ["groupid", "name"]}

    def test_host_groups_upstream_failure(self, api, fake_zabbix):
        api.post(f"{BASE}/poll-now")
        fake_zabbix.fail("hostgroup.get", *[ZabbixConnectionError("refused")] * 3)

        response = api.get(f"{BASE}/host-groups")

        assert response.status_code == 500
        assert response.json()["message"] == "Failed to fetch host groups"
