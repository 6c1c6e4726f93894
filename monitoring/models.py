"""
Zabbix Alert Bridge - Domain Models.

============================================================
PURPOSE
============================================================
Plain data types shared by the poll pipeline:

- Severity and status enumerations of the monitoring system
- AlertRecord: internal alert shape produced by the transformer
- Batch / dispatch / poll results returned by each stage

These types never touch the database. The ORM rows in
storage.models.monitoring are filled from them.

============================================================
"""

from enum import Enum, IntEnum
from datetime import datetime
from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field


# ============================================================
# ENUMERATIONS
# ============================================================

class Severity(IntEnum):
    """Zabbix trigger severity (0-4)."""

    NOT_CLASSIFIED = 0
    INFORMATION = 1
    WARNING = 2
    HIGH = 3
    DISASTER = 4

    @property
    def label(self) -> str:
        return SEVERITY_LABELS[self]

    @property
    def emoji(self) -> str:
        return SEVERITY_EMOJIS[self]

    @classmethod
    def coerce(cls, value: Any) -> "Severity":
        """Parse a raw severity value, clamping unknown input to NOT_CLASSIFIED."""
        try:
            return cls(int(value))
        except (TypeError, ValueError):
            return cls.NOT_CLASSIFIED


SEVERITY_LABELS: Dict[Severity, str] = {
    Severity.NOT_CLASSIFIED: "Not classified",
    Severity.INFORMATION: "Information",
    Severity.WARNING: "Warning",
    Severity.HIGH: "High",
    Severity.DISASTER: "Disaster",
}

SEVERITY_EMOJIS: Dict[Severity, str] = {
    Severity.NOT_CLASSIFIED: "⚪",
    Severity.INFORMATION: "ℹ️",
    Severity.WARNING: "⚠️",
    Severity.HIGH: "🔴",
    Severity.DISASTER: "🚨",
}

# Only these severities are persisted and notified
ACTIONABLE_SEVERITIES = frozenset({Severity.HIGH, Severity.DISASTER})


class AlertStatus(str, Enum):
    """Problem state as reported upstream."""

    OK = "OK"
    PROBLEM = "PROBLEM"


class PollState(Enum):
    """Poll orchestrator lifecycle states."""

    IDLE = "IDLE"
    INITIALIZING = "INITIALIZING"
    FETCHING = "FETCHING"
    TRANSFORMING = "TRANSFORMING"
    PERSISTING = "PERSISTING"
    MATCHING = "MATCHING"
    NOTIFYING = "NOTIFYING"
    RECONCILING = "RECONCILING"
    DISABLED = "DISABLED"


# ============================================================
# ALERT RECORD
# ============================================================

@dataclass
class AlertRecord:
    """
    Internal alert shape.

    One record per external alert identifier. Produced by
    monitoring.alerts.transformer and upserted by the alert store.
    """

    alert_id: str
    trigger_id: str
    host_id: str
    host: str
    trigger_name: str
    severity: int
    status: AlertStatus
    message: str
    event_time: datetime
    update_time: datetime

    trigger_description: Optional[str] = None

    # Acknowledgment
    acknowledged: bool = False
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None

    # Resolution
    resolved: bool = False
    resolved_at: Optional[datetime] = None

    # Opaque upstream payload kept for diagnostics
    raw_payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def severity_label(self) -> str:
        return Severity.coerce(self.severity).label

    @property
    def is_actionable(self) -> bool:
        return Severity.coerce(self.severity) in ACTIONABLE_SEVERITIES

    def to_column_values(self) -> Dict[str, Any]:
        """Column values for the persisted alert row."""
        return {
            "alert_id": self.alert_id,
            "trigger_id": self.trigger_id,
            "host_id": self.host_id,
            "host": self.host,
            "trigger_name": self.trigger_name,
            "trigger_description": self.trigger_description,
            "severity": int(self.severity),
            "status": self.status.value,
            "message": self.message,
            "event_time": self.event_time,
            "update_time": self.update_time,
            "acknowledged": self.acknowledged,
            "acknowledged_by": self.acknowledged_by,
            "acknowledged_at": self.acknowledged_at,
            "resolved": self.resolved,
            "resolved_at": self.resolved_at,
            "raw_payload": self.raw_payload,
        }


# ============================================================
# STAGE RESULTS
# ============================================================

@dataclass
class UpsertResult:
    """Outcome of a single alert upsert."""

    alert_id: str
    created: bool


@dataclass
class SaveResult:
    """Outcome of a batch upsert. Partial success is normal."""

    saved_count: int = 0
    updated_count: int = 0
    new_ids: List[str] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "saved": self.saved_count,
            "updated": self.updated_count,
            "new_alert_ids": list(self.new_ids),
            "errors": list(self.errors),
        }


@dataclass
class DispatchResult:
    """Outcome of notifying all eligible groups for one alert."""

    sent: int = 0
    failed: int = 0
    total: int = 0
    notified_group_ids: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    tiers_used: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sent": self.sent,
            "failed": self.failed,
            "total": self.total,
            "notified_group_ids": list(self.notified_group_ids),
            "errors": list(self.errors),
            "tiers_used": list(self.tiers_used),
        }


@dataclass
class PollResult:
    """Summary of one poll cycle."""

    cycle_id: str
    trigger: str
    started_at: datetime
    success: bool = False
    skipped: bool = False
    final_state: PollState = PollState.IDLE
    alerts_fetched: int = 0
    alerts_processed: int = 0
    saved_count: int = 0
    updated_count: int = 0
    new_alert_ids: List[str] = field(default_factory=list)
    notifications_sent: int = 0
    resolved_count: int = 0
    errors: List[str] = field(default_factory=list)
    error: Optional[str] = None
    duration_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "trigger": self.trigger,
            "started_at": self.started_at.isoformat(),
            "success": self.success,
            "skipped": self.skipped,
            "final_state": self.final_state.value,
            "alerts_fetched": self.alerts_fetched,
            "alerts_processed": self.alerts_processed,
            "saved": self.saved_count,
            "updated": self.updated_count,
            "new_alert_ids": list(self.new_alert_ids),
            "notifications_sent": self.notifications_sent,
            "resolved": self.resolved_count,
            "errors": list(self.errors),
            "error": self.error,
            "duration_seconds": round(self.duration_seconds, 3),
        }
