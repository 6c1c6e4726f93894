"""
Tests for the Zabbix JSON-RPC client.

============================================================
PURPOSE
============================================================
Verify authentication mode selection, the retry/backoff and
re-login policy, HTTP error classification and the problem
enrichment join. The HTTP layer is replaced by FakeZabbix (at
_post) or by a fake aiohttp session (at _get_session).

============================================================
"""

import logging
from unittest.mock import AsyncMock, call

import aiohttp
import pytest

from monitoring.zabbix.client import (
    ZabbixClient,
    is_auth_error_payload,
    is_likely_bearer_token,
    normalize_url,
)
from monitoring.zabbix.exceptions import (
    ZabbixAuthenticationError,
    ZabbixConnectionError,
    ZabbixError,
    ZabbixHTTPError,
)
from storage.models import MonitoringConfig

from tests.monitoring.fakes import BEARER_TOKEN


SESSION_EXPIRED = {"code": -32602, "message": "Invalid params.",
                   "data": "Session terminated, re-login, please."}
USERNAME_REJECTED = {"code": -32602, "message": "Invalid params.",
                     "data": 'Invalid parameter "/": unexpected parameter "username".'}


def make_config(cipher, token=None, username=None, password=None,
                url="https://zabbix.example.com/", enabled=True):
    config = MonitoringConfig(url=url, enabled=enabled, username=username)
    config.set_api_token(cipher, token)
    config.set_password(cipher, password)
    return config


class FakeResponse:
    def __init__(self, status=200, body=None, text=""):
        self.status = status
        self._body = body
        self._text = text

    async def json(self, content_type=None):
        if isinstance(self._body, Exception):
            raise self._body
        return self._body

    async def text(self):
        return self._text


class FakeSession:
    """aiohttp.ClientSession stand-in: post() is an async context manager."""

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.closed = False
        self.posted = []

    def post(self, url, json=None):
        self.posted.append((url, json))
        return self

    async def __aenter__(self):
        if self.error is not None:
            raise self.error
        return self.response

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def close(self):
        self.closed = True


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def client(fake_zabbix, sleep):
    client = ZabbixClient(sleep=sleep, backoff_seconds=1.0, max_retries=3)
    client._post = fake_zabbix
    return client


@pytest.fixture
def session_config(cipher):
    return make_config(cipher, username="admin", password="zabbix")


# ============================================================
# HELPERS
# ============================================================

class TestHelpers:

    def test_normalize_url(self):
        assert normalize_url("  https://z.example.com///  ") == "https://z.example.com"
        assert normalize_url(None) == ""

    def test_bearer_detection(self):
        assert is_likely_bearer_token("a" * 40)
        assert not is_likely_bearer_token("a" * 39)
        assert not is_likely_bearer_token("a" * 30 + " " + "b" * 20)
        assert not is_likely_bearer_token(None)

    def test_auth_error_detection(self):
        assert is_auth_error_payload(SESSION_EXPIRED)
        assert is_auth_error_payload({"message": "Not authorised."})
        assert not is_auth_error_payload(USERNAME_REJECTED)


# ============================================================
# INITIALIZATION
# ============================================================

class TestInitialize:
    """Auth mode selection and the connectivity probe."""

    @pytest.mark.asyncio
    async def test_bearer_token(self, client, fake_zabbix, cipher):
        assert await client.initialize(make_config(cipher, token=BEARER_TOKEN), cipher)

        assert client.initialized
        assert client.is_bearer_token
        assert client.url == "https://zabbix.example.com"
        assert client.api_url == "https://zabbix.example.com/api_jsonrpc.php"
        assert fake_zabbix.count("apiinfo.version") == 1
        assert fake_zabbix.count("user.login") == 0

    @pytest.mark.asyncio
    async def test_probe_is_unauthenticated(self, client, fake_zabbix, cipher):
        await client.initialize(make_config(cipher, token=BEARER_TOKEN), cipher)
        probe = [c for c in fake_zabbix.calls if c["method"] == "apiinfo.version"][0]
        assert "auth" not in probe

    @pytest.mark.asyncio
    async def test_short_token_uses_session_login(self, client, fake_zabbix, cipher):
        config = make_config(cipher, token="short", username="admin", password="zabbix")

        assert await client.initialize(config, cipher)

        assert not client.is_bearer_token
        assert client.auth_token == "session-token"
        login = [c for c in fake_zabbix.calls if c["method"] == "user.login"][0]
        assert login["params"] == {"username": "admin", "password": "zabbix"}

    @pytest.mark.asyncio
    async def test_login_falls_back_to_user_field(self, client, fake_zabbix, session_config, cipher):
        fake_zabbix.fail("user.login", USERNAME_REJECTED)

        assert await client.initialize(session_config, cipher)

        logins = [c["params"] for c in fake_zabbix.calls if c["method"] == "user.login"]
        assert logins == [
            {"username": "admin", "password": "zabbix"},
            {"user": "admin", "password": "zabbix"},
        ]

    @pytest.mark.asyncio
    async def test_rejected_login(self, client, fake_zabbix, session_config, cipher):
        fake_zabbix.fail("user.login", {"code": -32500, "message": "Application error.",
                                        "data": "Incorrect user name or password."})

        assert not await client.initialize(session_config, cipher)
        assert not client.initialized
        assert "Login failed" in client.last_error

    @pytest.mark.asyncio
    async def test_bearer_probe_failure_falls_back_to_login(self, client, fake_zabbix, cipher):
        fake_zabbix.fail("apiinfo.version", ZabbixConnectionError("refused"))
        config = make_config(cipher, token=BEARER_TOKEN, username="admin", password="zabbix")

        assert await client.initialize(config, cipher)
        assert not client.is_bearer_token
        assert fake_zabbix.count("user.login") == 1

    @pytest.mark.asyncio
    async def test_corrupted_token_falls_back_to_login(self, client, fake_zabbix, cipher):
        config = make_config(cipher, token=BEARER_TOKEN, username="admin", password="zabbix")
        config.api_token_encrypted = "not-hex-ciphertext"

        assert await client.initialize(config, cipher)

        assert not client.is_bearer_token
        assert client.auth_token == "session-token"
        assert fake_zabbix.count("user.login") == 1

    @pytest.mark.asyncio
    async def test_unreachable_endpoint(self, client, fake_zabbix, cipher):
        fake_zabbix.fail("apiinfo.version", ZabbixConnectionError("refused"))

        assert not await client.initialize(make_config(cipher, token=BEARER_TOKEN), cipher)
        assert not client.initialized
        assert "refused" in client.last_error

    @pytest.mark.asyncio
    async def test_no_credentials(self, client, cipher):
        assert not await client.initialize(make_config(cipher, token="short"), cipher)
        assert client.last_error == "No usable credentials"

    @pytest.mark.asyncio
    async def test_invalid_url(self, client, cipher):
        config = make_config(cipher, token=BEARER_TOKEN, url="zabbix.local")
        assert not await client.initialize(config, cipher)
        assert client.last_error == "Invalid Zabbix URL"

    @pytest.mark.asyncio
    async def test_disabled(self, client, fake_zabbix, cipher):
        config = make_config(cipher, token=BEARER_TOKEN, enabled=False)
        assert not await client.initialize(config, cipher)
        assert fake_zabbix.calls == []

    @pytest.mark.asyncio
    async def test_reinitialize_resets_state(self, client, cipher, session_config):
        await client.initialize(session_config, cipher)
        assert client.auth_token

        assert not await client.initialize(None, cipher)
        assert client.auth_token is None
        assert not client.initialized


# ============================================================
# REQUESTS
# ============================================================

class TestRequestRetry:
    """Backoff and re-login policy."""

    @pytest.mark.asyncio
    async def test_requires_initialization(self, client):
        with pytest.raises(ZabbixError):
            await client.request("host.get")

    @pytest.mark.asyncio
    async def test_auth_sent_in_body(self, client, fake_zabbix, cipher):
        await client.initialize(make_config(cipher, token=BEARER_TOKEN), cipher)
        await client.get_hosts()
        assert fake_zabbix.calls[-1]["auth"] == BEARER_TOKEN
        assert fake_zabbix.calls[-1]["jsonrpc"] == "2.0"

    @pytest.mark.asyncio
    async def test_linear_backoff_then_success(self, client, fake_zabbix, sleep, cipher):
        await client.initialize(make_config(cipher, token=BEARER_TOKEN), cipher)
        fake_zabbix.add_problem("1001")
        fake_zabbix.fail("problem.get", ZabbixConnectionError("refused"),
                         ZabbixConnectionError("refused"))

        problems = await client.get_problems()

        assert [p["eventid"] for p in problems] == ["1001"]
        assert sleep.await_args_list == [call(1.0), call(2.0)]

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, client, fake_zabbix, sleep, cipher):
        await client.initialize(make_config(cipher, token=BEARER_TOKEN), cipher)
        fake_zabbix.fail("problem.get", *[ZabbixConnectionError(f"refused {i}") for i in range(3)])

        with pytest.raises(ZabbixConnectionError, match="refused 2"):
            await client.get_problems()

        assert fake_zabbix.count("problem.get") == 3
        # No sleep after the final attempt
        assert sleep.await_args_list == [call(1.0), call(2.0)]

    @pytest.mark.asyncio
    async def test_max_retries_override(self, client, fake_zabbix, sleep, cipher):
        await client.initialize(make_config(cipher, token=BEARER_TOKEN), cipher)
        fake_zabbix.fail("host.get", ZabbixConnectionError("refused"))

        with pytest.raises(ZabbixConnectionError):
            await client.request("host.get", {}, max_retries=1)
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_zero_retries_rejected(self, client, fake_zabbix, cipher):
        await client.initialize(make_config(cipher, token=BEARER_TOKEN), cipher)

        with pytest.raises(ValueError):
            await client.request("host.get", {}, max_retries=0)
        assert fake_zabbix.count("host.get") == 0

    @pytest.mark.asyncio
    async def test_every_attempt_logged(self, client, fake_zabbix, cipher, caplog):
        await client.initialize(make_config(cipher, token=BEARER_TOKEN), cipher)
        fake_zabbix.fail("host.get", ZabbixConnectionError("refused"))

        with caplog.at_level(logging.DEBUG, logger="monitoring.zabbix.client"):
            await client.get_hosts()

        messages = [r.getMessage() for r in caplog.records]
        assert "Zabbix host.get attempt 1/3" in messages
        assert "Zabbix host.get attempt 2/3" in messages
        assert any("attempt 1/3 failed [connection]" in m for m in messages)

    @pytest.mark.asyncio
    async def test_relogin_on_expired_session(self, client, fake_zabbix, sleep, session_config, cipher):
        await client.initialize(session_config, cipher)
        fake_zabbix.add_problem("1001")
        fake_zabbix.fail("problem.get", SESSION_EXPIRED)

        problems = await client.get_problems()

        assert len(problems) == 1
        assert fake_zabbix.count("user.login") == 2
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_second_auth_failure_is_terminal(self, client, fake_zabbix, session_config, cipher):
        await client.initialize(session_config, cipher)
        fake_zabbix.fail("problem.get", SESSION_EXPIRED, SESSION_EXPIRED)

        with pytest.raises(ZabbixAuthenticationError):
            await client.get_problems()
        assert fake_zabbix.count("problem.get") == 2

    @pytest.mark.asyncio
    async def test_auth_failure_without_credentials(self, client, fake_zabbix, cipher):
        await client.initialize(make_config(cipher, token=BEARER_TOKEN), cipher)
        fake_zabbix.fail("problem.get", {"code": -32602, "message": "Not authorised."})

        with pytest.raises(ZabbixAuthenticationError):
            await client.get_problems()
        assert fake_zabbix.count("user.login") == 0

    @pytest.mark.asyncio
    async def test_malformed_response(self, client, cipher):
        await client.initialize(make_config(cipher, token=BEARER_TOKEN), cipher)
        client._post = AsyncMock(return_value={"jsonrpc": "2.0", "id": 1})

        with pytest.raises(ZabbixError, match="no result"):
            await client.request("host.get", max_retries=1)


class TestHttpClassification:
    """Transport errors from the aiohttp layer."""

    @pytest.fixture
    def http_client(self):
        client = ZabbixClient(sleep=AsyncMock())
        client.url = "https://zabbix.example.com"
        return client

    @pytest.mark.asyncio
    async def test_http_401_is_authentication(self, http_client):
        http_client._get_session = AsyncMock(return_value=FakeSession(FakeResponse(401)))
        with pytest.raises(ZabbixAuthenticationError):
            await http_client._post({"method": "host.get"})

    @pytest.mark.asyncio
    async def test_http_500(self, http_client):
        http_client._get_session = AsyncMock(
            return_value=FakeSession(FakeResponse(502, text="bad gateway"))
        )
        with pytest.raises(ZabbixHTTPError) as exc_info:
            await http_client._post({"method": "host.get"})
        assert exc_info.value.status_code == 502
        assert exc_info.value.is_server_error()
        assert exc_info.value.response_body == "bad gateway"

    @pytest.mark.asyncio
    async def test_connection_refused(self, http_client):
        http_client._get_session = AsyncMock(
            return_value=FakeSession(error=aiohttp.ClientConnectionError("refused"))
        )
        with pytest.raises(ZabbixConnectionError):
            await http_client._post({"method": "host.get"})

    @pytest.mark.asyncio
    async def test_invalid_json(self, http_client):
        http_client._get_session = AsyncMock(
            return_value=FakeSession(FakeResponse(200, body=ValueError("bad json")))
        )
        with pytest.raises(ZabbixError, match="Invalid JSON"):
            await http_client._post({"method": "host.get"})

    @pytest.mark.asyncio
    async def test_posts_to_api_path(self, http_client):
        session = FakeSession(FakeResponse(200, body={"jsonrpc": "2.0", "result": "6.4", "id": 1}))
        http_client._get_session = AsyncMock(return_value=session)

        body = await http_client._post({"method": "apiinfo.version"})

        assert body["result"] == "6.4"
        assert session.posted[0][0] == "https://zabbix.example.com/api_jsonrpc.php"


# ============================================================
# API METHODS
# ============================================================

class TestApiMethods:

    @pytest.mark.asyncio
    async def test_fetch_problems_with_details(self, client, fake_zabbix, cipher):
        await client.initialize(make_config(cipher, token=BEARER_TOKEN), cipher)
        fake_zabbix.add_problem("1001", host="db-01")
        fake_zabbix.add_problem("1002", host="web-01")
        orphan = {"eventid": "1003", "objectid": "999", "severity": "4",
                  "hosts": [{"hostid": "h-db-01"}]}
        fake_zabbix.problems.append(orphan)

        enriched = await client.fetch_problems_with_details()

        by_id = {item.problem["eventid"]: item for item in enriched}
        assert by_id["1001"].trigger["triggerid"] == "11001"
        assert by_id["1001"].host["host"] == "db-01"
        assert by_id["1002"].host["host"] == "web-01"
        assert by_id["1003"].trigger is None
        # Falls back to the hosts embedded in the problem
        assert by_id["1003"].host["host"] == "db-01"

    @pytest.mark.asyncio
    async def test_fetch_requests_high_severities(self, client, fake_zabbix, cipher):
        await client.initialize(make_config(cipher, token=BEARER_TOKEN), cipher)
        await client.fetch_problems_with_details([3, 4], 1000)

        params = [c for c in fake_zabbix.calls if c["method"] == "problem.get"][0]["params"]
        assert params["severities"] == [3, 4]
        assert params["limit"] == 1000
        assert fake_zabbix.count("trigger.get") == 0

    @pytest.mark.asyncio
    async def test_acknowledge_with_message(self, client, fake_zabbix, cipher):
        await client.initialize(make_config(cipher, token=BEARER_TOKEN), cipher)

        await client.acknowledge_problem(["1001"], "on it")

        params = fake_zabbix.calls[-1]["params"]
        assert params == {"eventids": ["1001"], "action": 6, "message": "on it"}

    @pytest.mark.asyncio
    async def test_verify_credentials(self, client, fake_zabbix, cipher):
        probe = await client.verify_credentials(make_config(cipher, token=BEARER_TOKEN), cipher)

        assert probe.success
        assert probe.version == "6.4.0"
        assert fake_zabbix.count("host.get") == 1

    @pytest.mark.asyncio
    async def test_verify_credentials_rejected(self, client, fake_zabbix, cipher):
        fake_zabbix.fail("host.get", {"code": -32602, "message": "Not authorised."})

        probe = await client.verify_credentials(make_config(cipher, token=BEARER_TOKEN), cipher)

        assert not probe.success
        assert "Not authorised" in probe.error
