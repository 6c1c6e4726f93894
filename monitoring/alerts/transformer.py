"""
Alert Transformer.

============================================================
PURPOSE
============================================================
Maps a raw Zabbix problem (plus optional trigger and host
objects) into an AlertRecord.

The upstream payload is loosely typed: ids arrive as strings,
timestamps as epoch-second strings, and several fields have
alternates. RawProblem names the fields the transformer reads
and keeps the full payload verbatim for diagnostics.

============================================================
RULES
============================================================
- event_time: clock, else epoch suffix of eventid ("x_<ts>"),
  else now
- status: PROBLEM if value is truthy/1; when value is absent,
  PROBLEM unless r_eventid names a recovery event
- host: host object, else trigger.hosts[0], else problem.hosts[0],
  else "Unknown"/"unknown"
- alert_id: eventid, objectid, problemid, else
  "<trigger_id>_<event_time epoch ms>"
- resolved = status OK; resolved_at = event_time when resolved

The severity policy is applied by the poller before calling
transform_problem (see filter_actionable).

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from monitoring.models import ACTIONABLE_SEVERITIES, AlertRecord, AlertStatus, Severity


UNKNOWN_HOST = "Unknown"
UNKNOWN_ID = "unknown"
UNKNOWN_TRIGGER = "Unknown Trigger"


def _str_or_none(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _is_truthy_flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true")
    return bool(value)


def _from_epoch(value: Any) -> Optional[datetime]:
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        return None
    if seconds <= 0:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


@dataclass
class RawProblem:
    """
    Structural view of a problem.get entry.

    Only the fields the transformer reads are lifted out;
    payload keeps the original dict untouched.
    """

    eventid: Optional[str] = None
    objectid: Optional[str] = None
    problemid: Optional[str] = None
    clock: Optional[str] = None
    name: Optional[str] = None
    opdata: Optional[str] = None
    severity: Any = None
    value: Any = None
    r_eventid: Optional[str] = None
    acknowledged: Any = None
    acknowledges: List[Dict[str, Any]] = field(default_factory=list)
    hosts: List[Any] = field(default_factory=list)
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "RawProblem":
        return cls(
            eventid=_str_or_none(payload.get("eventid")),
            objectid=_str_or_none(payload.get("objectid")),
            problemid=_str_or_none(payload.get("problemid")),
            clock=_str_or_none(payload.get("clock")),
            name=payload.get("name") or None,
            opdata=payload.get("opdata") or None,
            severity=payload.get("severity"),
            value=payload.get("value"),
            r_eventid=_str_or_none(payload.get("r_eventid")),
            acknowledged=payload.get("acknowledged"),
            acknowledges=list(payload.get("acknowledges") or []),
            hosts=list(payload.get("hosts") or []),
            payload=payload,
        )

    @property
    def severity_level(self) -> Severity:
        return Severity.coerce(self.severity)

    @property
    def is_active(self) -> bool:
        """Whether upstream still reports this problem as open."""
        if self.value is not None:
            return _is_truthy_flag(self.value)
        return self.r_eventid in (None, "0")

    @property
    def external_id(self) -> Optional[str]:
        return self.eventid or self.objectid or self.problemid


# ============================================================
# SEVERITY POLICY
# ============================================================

def filter_actionable(problems: Iterable[RawProblem]) -> List[RawProblem]:
    """Keep only high and disaster problems."""
    return [p for p in problems if p.severity_level in ACTIONABLE_SEVERITIES]


# ============================================================
# FIELD DERIVATION
# ============================================================

def derive_event_time(raw: RawProblem, now: datetime) -> datetime:
    event_time = _from_epoch(raw.clock)
    if event_time is not None:
        return event_time

    if raw.eventid and "_" in raw.eventid:
        event_time = _from_epoch(raw.eventid.rsplit("_", 1)[-1])
        if event_time is not None:
            return event_time

    return now


def _host_fields(entry: Any) -> Optional[tuple]:
    if isinstance(entry, dict):
        name = entry.get("host") or entry.get("name") or UNKNOWN_HOST
        return str(name), str(entry.get("hostid") or UNKNOWN_ID)
    if isinstance(entry, str) and entry:
        return entry, entry
    return None


def derive_host(
    raw: RawProblem,
    trigger: Optional[Dict[str, Any]],
    host: Optional[Dict[str, Any]],
) -> tuple:
    """(host name, host id)."""
    if host:
        resolved = _host_fields(host)
        if resolved:
            return resolved

    for candidates in ((trigger or {}).get("hosts") or [], raw.hosts):
        if candidates:
            resolved = _host_fields(candidates[0])
            if resolved:
                return resolved

    return UNKNOWN_HOST, UNKNOWN_ID


def derive_acknowledgment(raw: RawProblem, now: datetime) -> tuple:
    """(acknowledged, acknowledged_by, acknowledged_at)."""
    if not _is_truthy_flag(raw.acknowledged):
        return False, None, None

    acknowledged_by = None
    acknowledged_at = None
    if raw.acknowledges:
        last = raw.acknowledges[-1]
        acknowledged_by = _str_or_none(
            last.get("username") or last.get("alias") or last.get("userid")
        )
        acknowledged_at = _from_epoch(last.get("clock"))

    # acknowledged implies acknowledged_at
    return True, acknowledged_by, acknowledged_at or now


# ============================================================
# TRANSFORM
# ============================================================

def transform_problem(
    raw: RawProblem,
    trigger: Optional[Dict[str, Any]] = None,
    host: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> AlertRecord:
    """
    Convert a raw problem into an AlertRecord.

    Args:
        raw: Parsed problem
        trigger: trigger.get entry for raw.objectid, if found
        host: host.get entry for the trigger's host, if found
        now: Reference time (defaults to current UTC)
    """
    now = now or datetime.now(timezone.utc)
    trigger = trigger or {}

    event_time = derive_event_time(raw, now)
    status = AlertStatus.PROBLEM if raw.is_active else AlertStatus.OK
    host_name, host_id = derive_host(raw, trigger, host)

    trigger_id = raw.objectid or _str_or_none(trigger.get("triggerid")) or UNKNOWN_ID
    trigger_name = (
        trigger.get("description")
        or raw.name
        or trigger.get("expression")
        or UNKNOWN_TRIGGER
    )
    trigger_description = trigger.get("comments") or None

    alert_id = raw.external_id
    if not alert_id:
        alert_id = f"{trigger_id}_{int(event_time.timestamp() * 1000)}"

    acknowledged, acknowledged_by, acknowledged_at = derive_acknowledgment(raw, now)

    message = raw.name or raw.opdata
    if not message:
        message = trigger_name if trigger_name != UNKNOWN_TRIGGER else ""

    resolved = status == AlertStatus.OK

    return AlertRecord(
        alert_id=str(alert_id),
        trigger_id=str(trigger_id),
        host_id=host_id,
        host=host_name,
        trigger_name=str(trigger_name),
        trigger_description=trigger_description,
        severity=int(raw.severity_level),
        status=status,
        message=str(message),
        event_time=event_time,
        update_time=now,
        acknowledged=acknowledged,
        acknowledged_by=acknowledged_by,
        acknowledged_at=acknowledged_at,
        resolved=resolved,
        resolved_at=event_time if resolved else None,
        raw_payload=raw.payload,
    )
