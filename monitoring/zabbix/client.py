"""
Zabbix JSON-RPC Client.

============================================================
PURPOSE
============================================================
Authenticated access to the Zabbix API.

- Bearer-style API token or username/password session login
- JSON-RPC 2.0 over aiohttp, auth carried in the request body
- Linear backoff on connection-class errors
- One inline re-login per authentication failure
- Problem/trigger/host fetch joined in memory

============================================================
STATE
============================================================
- url: normalized base URL (trailing slashes stripped)
- auth token, and whether it is a long-lived bearer token
- username/password for session login
- initialized flag

Constructed once per process and shared by the poller and the
admin API.

============================================================
"""

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional
from urllib.parse import urlparse

import aiohttp

from monitoring.zabbix.exceptions import (
    ZabbixAPIError,
    ZabbixAuthenticationError,
    ZabbixConnectionError,
    ZabbixError,
    ZabbixHTTPError,
)


logger = logging.getLogger(__name__)


# ============================================================
# CONSTANTS
# ============================================================

API_PATH = "/api_jsonrpc.php"
DEFAULT_TIMEOUT = 30.0
MAX_RETRIES = 3
BACKOFF_SECONDS = 1.0
BEARER_TOKEN_MIN_LENGTH = 40

# Lowercased fragments of JSON-RPC error text that mean the token is bad
AUTH_ERROR_MARKERS = (
    "not authorised",
    "not authorized",
    "session terminated",
    "re-login",
    "invalid token",
    "api token expired",
    "session does not exist",
)


# ============================================================
# HELPERS
# ============================================================

def normalize_url(url: Optional[str]) -> str:
    """Strip whitespace and trailing slashes."""
    return (url or "").strip().rstrip("/")


def is_valid_url(url: str) -> bool:
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def is_likely_bearer_token(token: Optional[str]) -> bool:
    """Long (>= 40 chars) and free of whitespace."""
    if not token:
        return False
    return len(token) >= BEARER_TOKEN_MIN_LENGTH and not any(c.isspace() for c in token)


def is_auth_error_payload(error: Dict[str, Any]) -> bool:
    text = f"{error.get('message', '')} {error.get('data', '')}".lower()
    return any(marker in text for marker in AUTH_ERROR_MARKERS)


@dataclass
class ConnectionProbe:
    """Outcome of the unauthenticated version probe."""

    success: bool
    version: Optional[str] = None
    error: Optional[str] = None
    latency_ms: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "version": self.version,
            "error": self.error,
            "latency_ms": round(self.latency_ms, 1) if self.latency_ms is not None else None,
        }


@dataclass
class EnrichedProblem:
    """A raw problem joined with its trigger and host (None if unresolvable)."""

    problem: Dict[str, Any]
    trigger: Optional[Dict[str, Any]] = None
    host: Optional[Dict[str, Any]] = None


# ============================================================
# CLIENT
# ============================================================

class ZabbixClient:
    """
    Zabbix API client with retry and re-authentication.

    Usage:
        client = ZabbixClient()
        if await client.initialize(config, cipher):
            problems = await client.fetch_problems_with_details([3, 4], 1000)
        await client.close()
    """

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_TIMEOUT,
        max_retries: int = MAX_RETRIES,
        backoff_seconds: float = BACKOFF_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

        self._session: Optional[aiohttp.ClientSession] = None
        self._request_ids = itertools.count(1)
        self._reset()

    def _reset(self) -> None:
        self.url: str = ""
        self.auth_token: Optional[str] = None
        self.is_bearer_token = False
        self.username: Optional[str] = None
        self.password: Optional[str] = None
        self.initialized = False
        self.last_error: Optional[str] = None

    @property
    def api_url(self) -> str:
        return f"{self.url}{API_PATH}"

    @property
    def has_credentials(self) -> bool:
        """Username and password are both known."""
        return bool(self.username and self.password)

    # =========================================================
    # INITIALIZATION
    # =========================================================

    async def initialize(self, config: Any, cipher: Any) -> bool:
        """
        Configure the client from a MonitoringConfig.

        Never raises; returns False when the integration is
        disabled, unconfigured, or the endpoint cannot be reached.

        Args:
            config: MonitoringConfig row (or None)
            cipher: CredentialCipher for the stored secrets

        Returns:
            True if the client is ready for requests
        """
        self._reset()

        if config is None or not config.enabled:
            logger.info("Zabbix integration disabled, client not initialized")
            return False

        url = normalize_url(config.url)
        if not url or not is_valid_url(url):
            logger.error(f"Invalid Zabbix URL: {url!r}")
            self.last_error = "Invalid Zabbix URL"
            return False

        self.url = url
        self.username = config.username or None
        self.password = config.decrypt_password(cipher)
        token = config.decrypt_api_token(cipher)

        try:
            if token and is_likely_bearer_token(token):
                self.auth_token = token
                self.is_bearer_token = True
                logger.info("Using API token authentication")
            elif self.has_credentials:
                if token:
                    logger.info("Stored token is not bearer-shaped, using session login")
                await self.login(force=True)
            else:
                logger.error("No usable Zabbix credentials (token or username/password)")
                self.last_error = "No usable credentials"
                return False

            self.initialized = True
            probe = await self.test_connection()

            if not probe.success and self.is_bearer_token and self.has_credentials:
                logger.warning("Probe failed with API token, falling back to session login")
                self.auth_token = None
                self.is_bearer_token = False
                await self.login(force=True)
                probe = await self.test_connection()

            if not probe.success:
                logger.error(f"Zabbix connectivity probe failed: {probe.error}")
                self.last_error = probe.error
                self.initialized = False
                return False

        except ZabbixError as e:
            logger.error(f"Zabbix client initialization failed: {e}")
            self.last_error = str(e)
            self.initialized = False
            return False

        logger.info(f"Zabbix client initialized for {self.url} (API {probe.version})")
        return True

    async def test_connection(self) -> ConnectionProbe:
        """
        Unauthenticated apiinfo.version probe.

        Succeeds without any token, separating "endpoint reachable"
        from "credentials valid".
        """
        start = time.monotonic()
        try:
            version = await self._call("apiinfo.version", {}, auth=None)
        except ZabbixError as e:
            return ConnectionProbe(
                success=False,
                error=str(e),
                latency_ms=(time.monotonic() - start) * 1000,
            )
        return ConnectionProbe(
            success=True,
            version=str(version),
            latency_ms=(time.monotonic() - start) * 1000,
        )

    async def verify_credentials(self, config: Any, cipher: Any) -> ConnectionProbe:
        """
        Full round-trip: initialize from config, then one
        authenticated host.get.
        """
        start = time.monotonic()
        if not await self.initialize(config, cipher):
            return ConnectionProbe(
                success=False,
                error=self.last_error or "Initialization failed",
                latency_ms=(time.monotonic() - start) * 1000,
            )

        try:
            await self.request("host.get", {"output": ["hostid"], "limit": 1}, max_retries=1)
            version = await self.get_version()
        except ZabbixError as e:
            return ConnectionProbe(
                success=False,
                error=str(e),
                latency_ms=(time.monotonic() - start) * 1000,
            )
        return ConnectionProbe(
            success=True,
            version=version,
            latency_ms=(time.monotonic() - start) * 1000,
        )

    async def login(self, force: bool = False) -> str:
        """
        Obtain a session token with user.login.

        Raises:
            ZabbixAuthenticationError: No credentials, or login rejected
        """
        if self.auth_token and not force and not self.is_bearer_token:
            return self.auth_token

        if not self.has_credentials:
            raise ZabbixAuthenticationError(
                "Username and password are required for session login",
                method="user.login",
            )

        try:
            token = await self._call(
                "user.login",
                {"username": self.username, "password": self.password},
                auth=None,
            )
        except ZabbixAPIError as e:
            # Zabbix < 5.4 names the field "user"
            if "username" not in f"{e.message} {e.data}".lower():
                raise ZabbixAuthenticationError(
                    f"Login failed: {e}", method="user.login", original_error=e
                ) from e
            token = await self._call(
                "user.login",
                {"user": self.username, "password": self.password},
                auth=None,
            )

        if not token:
            raise ZabbixAuthenticationError("Login returned no session token", method="user.login")

        self.auth_token = str(token)
        self.is_bearer_token = False
        logger.info(f"Session login succeeded for user {self.username}")
        return self.auth_token

    async def _current_auth_token(self, force_relogin: bool = False) -> str:
        if self.is_bearer_token and self.auth_token and not force_relogin:
            return self.auth_token
        if not self.auth_token or force_relogin:
            return await self.login(force=True)
        return self.auth_token

    # =========================================================
    # REQUESTS
    # =========================================================

    async def request(
        self,
        method: str,
        params: Any = None,
        max_retries: Optional[int] = None,
    ) -> Any:
        """
        Authenticated RPC call with retry.

        - Connection-class errors: retry with attempt x backoff
        - Authentication errors: one forced re-login per failure,
          retrying the same attempt
        - Other errors: retried, surfaced once attempts run out

        Raises:
            ZabbixError: Last error after retries are exhausted
        """
        if not self.initialized:
            raise ZabbixError("Zabbix client is not initialized", method=method)

        retries = self.max_retries if max_retries is None else max_retries
        if retries < 1:
            raise ValueError(f"max_retries must be at least 1, got {retries}")

        attempt = 1
        relogged_this_attempt = False
        last_error: Optional[ZabbixError] = None

        while attempt <= retries:
            logger.debug(f"Zabbix {method} attempt {attempt}/{retries}")
            try:
                token = await self._current_auth_token()
                return await self._call(method, params if params is not None else {}, auth=token)

            except ZabbixAuthenticationError as e:
                logger.warning(
                    f"Zabbix {method} attempt {attempt}/{retries} failed "
                    f"[{e.classification}]: {e.message}"
                )
                if not self.has_credentials or relogged_this_attempt:
                    raise
                relogged_this_attempt = True
                # Re-login failure propagates as terminal for this call
                await self._current_auth_token(force_relogin=True)
                continue

            except ZabbixError as e:
                last_error = e
                logger.warning(
                    f"Zabbix {method} attempt {attempt}/{retries} failed "
                    f"[{e.classification}]: {e.message}"
                )
                if attempt < retries:
                    await self._sleep(attempt * self.backoff_seconds)
                attempt += 1
                relogged_this_attempt = False

        logger.error(f"Zabbix {method} failed after {retries} attempts: {last_error}")
        raise last_error

    async def _call(self, method: str, params: Any, auth: Optional[str]) -> Any:
        """Single JSON-RPC exchange; returns the result member."""
        payload: Dict[str, Any] = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": next(self._request_ids),
        }
        if auth:
            payload["auth"] = auth

        body = await self._post(payload)

        error = body.get("error")
        if error:
            if is_auth_error_payload(error):
                raise ZabbixAuthenticationError(
                    f"{error.get('message', 'Authentication failed')} {error.get('data', '')}".strip(),
                    method=method,
                    context={"code": error.get("code")},
                )
            raise ZabbixAPIError(
                error.get("message", "Unknown API error"),
                code=error.get("code"),
                data=error.get("data"),
                method=method,
            )

        if "result" not in body:
            raise ZabbixError("Malformed JSON-RPC response (no result)", method=method)
        return body["result"]

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create the HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
                headers={"Content-Type": "application/json-rpc"},
            )
        return self._session

    async def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST a JSON-RPC envelope and decode the response body."""
        method = payload.get("method")
        session = await self._get_session()

        try:
            async with session.post(self.api_url, json=payload) as response:
                if response.status == 401:
                    raise ZabbixAuthenticationError("HTTP 401 Unauthorized", method=method)
                if response.status >= 400:
                    text = await response.text()
                    raise ZabbixHTTPError(
                        f"HTTP {response.status}",
                        status_code=response.status,
                        response_body=text[:1000],
                        method=method,
                    )
                return await response.json(content_type=None)

        except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as e:
            raise ZabbixConnectionError(
                f"Cannot reach Zabbix at {self.url}: {type(e).__name__}",
                method=method,
                original_error=e,
            ) from e
        except aiohttp.ClientError as e:
            raise ZabbixError(
                f"HTTP client error: {e}",
                method=method,
                original_error=e,
            ) from e
        except ValueError as e:
            raise ZabbixError(
                "Invalid JSON in Zabbix response",
                method=method,
                original_error=e,
            ) from e

    # =========================================================
    # API METHODS
    # =========================================================

    async def get_version(self) -> Optional[str]:
        probe = await self.test_connection()
        return probe.version

    async def get_problems(
        self,
        severities: Iterable[int] = (3, 4),
        limit: int = 1000,
    ) -> List[Dict[str, Any]]:
        """Active problems, newest first."""
        params = {
            "output": "extend",
            "selectAcknowledges": "extend",
            "selectTags": "extend",
            "severities": [int(s) for s in severities],
            "sortfield": ["eventid"],
            "sortorder": "DESC",
            "limit": limit,
        }
        return await self.request("problem.get", params) or []

    async def get_triggers(self, trigger_ids: Iterable[str]) -> List[Dict[str, Any]]:
        ids = list(trigger_ids)
        if not ids:
            return []
        params = {
            "triggerids": ids,
            "output": ["triggerid", "description", "priority", "expression", "comments", "value"],
            "selectHosts": ["hostid", "host", "name"],
            "expandDescription": True,
        }
        return await self.request("trigger.get", params) or []

    async def get_hosts(self, host_ids: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"output": ["hostid", "host", "name", "status"]}
        if host_ids is not None:
            ids = list(host_ids)
            if not ids:
                return []
            params["hostids"] = ids
        return await self.request("host.get", params) or []

    async def get_host_groups(self) -> List[Dict[str, Any]]:
        return await self.request("hostgroup.get", {"output": ["groupid", "name"]}) or []

    async def acknowledge_problem(
        self,
        event_ids: Iterable[str],
        message: Optional[str] = None,
        action: int = 2,
    ) -> Dict[str, Any]:
        """
        Acknowledge problems via event.acknowledge.

        action is the Zabbix bitmask (2 = acknowledge); 4 (add
        message) is added automatically when a message is given.
        """
        params: Dict[str, Any] = {"eventids": list(event_ids), "action": action}
        if message:
            params["action"] = action | 4
            params["message"] = message
        return await self.request("event.acknowledge", params) or {}

    async def fetch_problems_with_details(
        self,
        severities: Iterable[int] = (3, 4),
        limit: int = 1000,
    ) -> List[EnrichedProblem]:
        """
        Fetch active problems joined with trigger and host.

        problem.objectid -> trigger; trigger.hosts[0] -> host,
        falling back to a hosts list embedded in the problem.
        """
        problems = await self.get_problems(severities, limit)
        if not problems:
            return []

        trigger_ids = sorted({str(p["objectid"]) for p in problems if p.get("objectid")})
        triggers = await self.get_triggers(trigger_ids)
        trigger_map = {str(t["triggerid"]): t for t in triggers if t.get("triggerid")}

        host_ids = set()
        for trigger in triggers:
            for host in trigger.get("hosts") or []:
                if isinstance(host, dict) and host.get("hostid"):
                    host_ids.add(str(host["hostid"]))
        hosts = await self.get_hosts(sorted(host_ids)) if host_ids else []
        host_map = {str(h["hostid"]): h for h in hosts if h.get("hostid")}

        enriched = []
        for problem in problems:
            trigger = trigger_map.get(str(problem.get("objectid")))
            host = None

            trigger_hosts = (trigger or {}).get("hosts") or []
            if trigger_hosts and isinstance(trigger_hosts[0], dict):
                host = host_map.get(str(trigger_hosts[0].get("hostid")))

            if host is None:
                embedded = problem.get("hosts") or []
                if embedded and isinstance(embedded[0], dict):
                    host = host_map.get(str(embedded[0].get("hostid")))

            enriched.append(EnrichedProblem(problem=problem, trigger=trigger, host=host))

        logger.info(
            f"Fetched {len(problems)} problems, {len(triggers)} triggers, {len(hosts)} hosts"
        )
        return enriched

    # =========================================================
    # LIFECYCLE
    # =========================================================

    def status(self) -> Dict[str, Any]:
        return {
            "initialized": self.initialized,
            "url": self.url or None,
            "auth_mode": "api_token" if self.is_bearer_token else "session",
            "has_session": bool(self.auth_token),
        }

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
