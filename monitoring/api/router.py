"""
Zabbix Admin API.

============================================================
PURPOSE
============================================================
HTTP surface for the admin UI:

- Config: read (secrets redacted), update, test connection,
  manual poll
- Alerts: list, detail, acknowledge, rule diagnostics
- Notification groups: CRUD and test send
- Subscribers: personal Telegram handles of group members
- Hosts: proxy of host.get and hostgroup.get

Every response is {success, message, error, data}. Raw
credentials never appear in a response or an error.

============================================================
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Generator, Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from monitoring.api.schemas import (
    AcknowledgeRequest,
    ApiResponse,
    ConfigUpdateRequest,
    ConnectionTestRequest,
    GroupCreateRequest,
    GroupUpdateRequest,
    SubscriberUpdateRequest,
)
from monitoring.models import AlertRecord, AlertStatus, Severity
from monitoring.poller import CYCLE_IN_PROGRESS
from monitoring.zabbix.client import ZabbixClient, is_valid_url, normalize_url
from monitoring.zabbix.exceptions import ZabbixError
from storage.database import session_scope
from storage.models import MonitoringConfig
from storage.repositories import MonitoringRepositories, RepositoryException


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/zabbix", tags=["zabbix"])


# ============================================================
# ERRORS
# ============================================================

class ApiError(Exception):
    """Raised by handlers; rendered as an ApiResponse with status_code."""

    def __init__(self, status_code: int, message: str, error: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.error = error or message


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    body = ApiResponse(success=False, message=exc.message, error=exc.error)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump(mode="json"))


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ApiError, api_error_handler)


# ============================================================
# DEPENDENCIES
# ============================================================

def get_integration(request: Request) -> Any:
    integration = getattr(request.app.state, "integration", None)
    if integration is None:
        raise ApiError(500, "Zabbix integration not initialized")
    return integration


def get_db(integration: Any = Depends(get_integration)) -> Generator[Session, None, None]:
    with session_scope(integration.session_factory) as session:
        yield session


def get_repos(db: Session = Depends(get_db)) -> MonitoringRepositories:
    return MonitoringRepositories.from_session(db)


def ok(data: Any = None, message: Optional[str] = None) -> ApiResponse:
    return ApiResponse(success=True, message=message, data=data)


# ============================================================
# CONFIG
# ============================================================

@router.get("/config", response_model=ApiResponse)
def get_config(
    integration: Any = Depends(get_integration),
    repos: MonitoringRepositories = Depends(get_repos),
):
    """Current config with credentials reduced to presence flags."""
    config = repos.config.get_or_create_default(integration.settings, integration.cipher)
    return ok(config.to_public_dict())


@router.put("/config", response_model=ApiResponse)
async def update_config(
    body: ConfigUpdateRequest,
    integration: Any = Depends(get_integration),
    repos: MonitoringRepositories = Depends(get_repos),
):
    """
    Update config; secrets are encrypted immediately and never echoed.
    """
    changes = body.model_dump(exclude_unset=True)
    if changes.get("url"):
        changes["url"] = normalize_url(changes["url"])
        if not is_valid_url(changes["url"]):
            raise ApiError(400, "Invalid Zabbix URL", "url must be an http(s) URL")

    config = repos.config.get_or_create_default(integration.settings, integration.cipher)
    repos.config.apply_update(config, integration.cipher, changes)

    if config.enabled and not config.url:
        repos.session.rollback()
        raise ApiError(400, "Zabbix URL is required when the integration is enabled")
    if config.enabled and not config.has_credentials:
        repos.session.rollback()
        raise ApiError(
            400,
            "Zabbix credentials are required when the integration is enabled",
            "provide api_token or username and password",
        )

    repos.session.commit()
    logger.info(f"Zabbix config updated: fields={sorted(changes)}")

    client_ready = False
    if config.enabled:
        client_ready = await integration.reinitialize_client(config)
    integration.apply_schedule(config)

    data = config.to_public_dict()
    data["client_ready"] = client_ready
    return ok(data, "Configuration updated")


@router.post("/test-connection", response_model=ApiResponse)
async def test_connection(
    body: Optional[ConnectionTestRequest] = None,
    integration: Any = Depends(get_integration),
    repos: MonitoringRepositories = Depends(get_repos),
):
    """
    Round-trip the given (or stored) URL and credentials.

    Uses a throwaway client so the shared one is untouched.
    """
    body = body or ConnectionTestRequest()
    stored = repos.config.get_or_create_default(integration.settings, integration.cipher)

    url = normalize_url(body.url or stored.url)
    if not url or not is_valid_url(url):
        raise ApiError(400, "Invalid Zabbix URL")

    candidate = MonitoringConfig(url=url, enabled=True, username=body.username or stored.username)
    candidate.set_api_token(
        integration.cipher,
        body.api_token if body.api_token is not None else stored.decrypt_api_token(integration.cipher),
    )
    candidate.set_password(
        integration.cipher,
        body.password if body.password is not None else stored.decrypt_password(integration.cipher),
    )
    if not candidate.has_credentials:
        raise ApiError(400, "No credentials to test", "provide api_token or username and password")

    client = ZabbixClient(
        timeout_seconds=integration.settings.request_timeout_seconds,
        max_retries=1,
    )
    try:
        probe = await client.verify_credentials(candidate, integration.cipher)
    finally:
        await client.close()

    if not probe.success:
        raise ApiError(400, "Connection test failed", probe.error)
    return ok(probe.to_dict(), f"Connected to Zabbix {probe.version}")


@router.post("/poll-now", response_model=ApiResponse)
async def poll_now(integration: Any = Depends(get_integration)):
    """
    Run one poll cycle immediately.

    Disabled or unconfigured integrations are rejected with 400;
    a cycle that is already running is reported, not queued.
    """
    with session_scope(integration.session_factory) as session:
        config = MonitoringRepositories.from_session(session).config.get_or_create_default(
            integration.settings, integration.cipher
        )
        enabled, url = config.enabled, config.url

    if not enabled:
        raise ApiError(400, "Zabbix integration is disabled")
    if not url:
        raise ApiError(400, "Zabbix URL not configured")

    result = await integration.orchestrator.run_cycle(trigger="manual")

    if result.skipped and result.error == CYCLE_IN_PROGRESS:
        return ApiResponse(
            success=False,
            message=result.error,
            error=result.error,
            data=result.to_dict(),
        )
    if result.skipped:
        raise ApiError(400, "Poll skipped", result.error or "Zabbix integration is disabled")
    if not result.success:
        raise ApiError(500, "Poll failed", result.error)
    return ok(result.to_dict(), "Poll completed")


@router.get("/status", response_model=ApiResponse)
def get_status(
    integration: Any = Depends(get_integration),
    repos: MonitoringRepositories = Depends(get_repos),
):
    config = repos.config.get_or_create_default(integration.settings, integration.cipher)
    last = integration.orchestrator.last_result
    return ok({
        "config": config.to_public_dict(),
        "client": integration.client.status(),
        "poller": {
            "state": integration.orchestrator.state.value,
            "running": integration.orchestrator.is_running,
            "last_result": last.to_dict() if last else None,
        },
        "scheduler": integration.scheduler.status(),
        "circuit_breaker": integration.breaker.to_dict(),
        "telegram_available": integration.dispatcher.messaging_available,
        "alerts": repos.alerts.count_by_status(),
    })


# ============================================================
# ALERTS
# ============================================================

@router.get("/alerts", response_model=ApiResponse)
def list_alerts(
    status: Optional[AlertStatus] = None,
    severity: Optional[int] = None,
    resolved: Optional[bool] = None,
    host: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    repos: MonitoringRepositories = Depends(get_repos),
):
    limit = max(1, min(limit, 500))
    items, total = repos.alerts.list_alerts(
        status=status.value if status else None,
        severity=severity,
        resolved=resolved,
        host=host,
        limit=limit,
        offset=max(0, offset),
    )
    return ok({
        "items": [alert.to_dict() for alert in items],
        "total": total,
        "limit": limit,
        "offset": offset,
    })


def _load_alert(repos: MonitoringRepositories, alert_id: str):
    alert = repos.alerts.get_by_alert_id(alert_id)
    if alert is None:
        raise ApiError(404, f"Alert {alert_id} not found")
    return alert


@router.get("/alerts/{alert_id}", response_model=ApiResponse)
def get_alert(alert_id: str, repos: MonitoringRepositories = Depends(get_repos)):
    return ok(_load_alert(repos, alert_id).to_dict(include_payload=True))


@router.post("/alerts/{alert_id}/acknowledge", response_model=ApiResponse)
async def acknowledge_alert(
    alert_id: str,
    body: Optional[AcknowledgeRequest] = None,
    integration: Any = Depends(get_integration),
    repos: MonitoringRepositories = Depends(get_repos),
):
    """Acknowledge in Zabbix (unless sync_upstream is false), then locally."""
    body = body or AcknowledgeRequest()
    alert = _load_alert(repos, alert_id)

    if body.sync_upstream:
        if not integration.client.initialized:
            raise ApiError(400, "Zabbix client not initialized")
        try:
            await integration.client.acknowledge_problem([alert.alert_id], body.message)
        except ZabbixError as e:
            logger.error(f"Acknowledge of {alert_id} failed: {e}")
            raise ApiError(500, "Failed to acknowledge in Zabbix", str(e))

    repos.alerts.mark_acknowledged(alert, body.acknowledged_by, integration.clock.now())
    return ok(alert.to_dict(), "Alert acknowledged")


@router.post("/alerts/{alert_id}/check", response_model=ApiResponse)
def check_alert_rules(
    alert_id: str,
    integration: Any = Depends(get_integration),
    repos: MonitoringRepositories = Depends(get_repos),
):
    """Which groups would receive this alert, and why the others would not."""
    alert = _load_alert(repos, alert_id)
    evaluations = integration.matcher.explain(alert, repos.groups.list_all())
    return ok({
        "alert": alert.to_dict(),
        "groups": [evaluation.to_dict() for evaluation in evaluations],
        "eligible_count": sum(1 for evaluation in evaluations if evaluation.eligible),
    })


# ============================================================
# NOTIFICATION GROUPS
# ============================================================

def _load_group(repos: MonitoringRepositories, group_id: str):
    group = repos.groups.get(group_id)
    if group is None:
        raise ApiError(404, f"Group {group_id} not found")
    return group


def _check_group_destination(fields: Dict[str, Any]) -> None:
    if not fields.get("telegram_chat_id") and not fields.get("member_ids"):
        raise ApiError(400, "Group needs a telegram_chat_id or at least one member")


@router.get("/groups", response_model=ApiResponse)
def list_groups(repos: MonitoringRepositories = Depends(get_repos)):
    return ok([group.to_dict() for group in repos.groups.list_all()])


@router.post("/groups", response_model=ApiResponse, status_code=201)
def create_group(
    body: GroupCreateRequest,
    integration: Any = Depends(get_integration),
    repos: MonitoringRepositories = Depends(get_repos),
):
    fields = body.model_dump(exclude={"telegram_bot_token"})
    _check_group_destination(fields)
    try:
        group = repos.groups.create(integration.cipher, fields, body.telegram_bot_token)
    except RepositoryException as e:
        raise ApiError(400, "Failed to create group", e.message)
    return ok(group.to_dict(), "Group created")


@router.get("/groups/{group_id}", response_model=ApiResponse)
def get_group(group_id: str, repos: MonitoringRepositories = Depends(get_repos)):
    return ok(_load_group(repos, group_id).to_dict())


@router.put("/groups/{group_id}", response_model=ApiResponse)
def update_group(
    group_id: str,
    body: GroupUpdateRequest,
    integration: Any = Depends(get_integration),
    repos: MonitoringRepositories = Depends(get_repos),
):
    group = _load_group(repos, group_id)
    changes = body.model_dump(exclude_unset=True, exclude={"telegram_bot_token"})
    _check_group_destination({
        "telegram_chat_id": changes.get("telegram_chat_id", group.telegram_chat_id),
        "member_ids": changes.get("member_ids", group.member_ids),
    })
    try:
        repos.groups.update(group, integration.cipher, changes, body.telegram_bot_token)
    except RepositoryException as e:
        raise ApiError(400, "Failed to update group", e.message)
    return ok(group.to_dict(), "Group updated")


@router.delete("/groups/{group_id}", response_model=ApiResponse)
def delete_group(group_id: str, repos: MonitoringRepositories = Depends(get_repos)):
    group = _load_group(repos, group_id)
    repos.groups.delete(group)
    return ok(message="Group deleted")


@router.post("/groups/{group_id}/test", response_model=ApiResponse)
async def test_group(
    group_id: str,
    integration: Any = Depends(get_integration),
    repos: MonitoringRepositories = Depends(get_repos),
):
    """Send a synthetic alert to the group; stats and rate limits are untouched."""
    group = _load_group(repos, group_id)
    now = integration.clock.now()
    sample = AlertRecord(
        alert_id=f"test_{int(now.timestamp() * 1000)}",
        trigger_id="test",
        host_id="test",
        host="test-host",
        trigger_name="Test notification",
        trigger_description=None,
        severity=int(Severity.HIGH),
        status=AlertStatus.PROBLEM,
        message=f"Test message for group {group.name}",
        event_time=now,
        update_time=now,
    )
    result = await integration.dispatcher.notify(
        sample, [group], repos, title_prefix="Test Alert", test=True
    )
    if result.sent == 0:
        raise ApiError(500, "Test notification failed", "; ".join(result.errors) or None)
    return ok(result.to_dict(), f"Test notification sent ({result.sent})")


# ============================================================
# SUBSCRIBERS
# ============================================================

@router.get("/subscribers", response_model=ApiResponse)
def list_subscribers(repos: MonitoringRepositories = Depends(get_repos)):
    return ok([subscriber.to_dict() for subscriber in repos.subscribers.list_all()])


@router.put("/subscribers/{subscriber_id}", response_model=ApiResponse)
def upsert_subscriber(
    subscriber_id: str,
    body: SubscriberUpdateRequest,
    repos: MonitoringRepositories = Depends(get_repos),
):
    subscriber = repos.subscribers.upsert(subscriber_id, body.model_dump(exclude_unset=True))
    return ok(subscriber.to_dict(), "Subscriber saved")


# ============================================================
# HOSTS
# ============================================================

@router.get("/hosts", response_model=ApiResponse)
async def list_hosts(integration: Any = Depends(get_integration)):
    if not integration.client.initialized:
        raise ApiError(400, "Zabbix client not initialized")
    try:
        hosts = await integration.client.get_hosts()
    except ZabbixError as e:
        raise ApiError(500, "Failed to fetch hosts", str(e))
    return ok({"items": hosts, "total": len(hosts), "fetched_at": datetime.now(timezone.utc).isoformat()})


@router.get("/host-groups", response_model=ApiResponse)
async def list_host_groups(integration: Any = Depends(get_integration)):
    """Zabbix host groups, for building group filters in the admin UI."""
    if not integration.client.initialized:
        raise ApiError(400, "Zabbix client not initialized")
    try:
        host_groups = await integration.client.get_host_groups()
    except ZabbixError as e:
        raise ApiError(500, "Failed to fetch host groups", str(e))
    return ok({"items": host_groups, "total": len(host_groups)})
