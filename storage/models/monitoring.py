"""
Monitoring Integration ORM Models.

============================================================
PURPOSE
============================================================
Models for the Zabbix alert bridge: integration configuration,
alerts mirrored from the monitoring system, notification groups
and the subscriber directory used to reach individual members.

============================================================
DATA LIFECYCLE ROLE
============================================================
- MonitoringConfig: singleton, mutated by admin edits and by
  poll statistics after every cycle
- ZabbixAlert: created on first sighting, updated in place on
  every later sighting, never hard-deleted
- NotificationGroup: administrator-managed, counters mutated by
  the matcher and dispatcher
- Subscriber: personal messaging handles for group members

============================================================
MODELS
============================================================
- MonitoringConfig
- ZabbixAlert
- NotificationGroup
- Subscriber

============================================================
"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Boolean,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from core.clock import ensure_utc, to_iso8601
from monitoring.models import AlertStatus, Severity
from storage.models.base import Base, JSONType, TimestampMixin, UTCDateTime


class MonitoringConfig(Base, TimestampMixin):
    """
    Monitoring endpoint configuration.

    ============================================================
    PURPOSE
    ============================================================
    Holds the endpoint URL, encrypted credentials and poll
    statistics. At most one row is active per deployment.

    ============================================================
    SECRETS
    ============================================================
    API token and password are stored only as ciphertext plus
    IV (hex). Plaintext is produced on demand by a cipher passed
    in by the caller and is never serialized.

    ============================================================
    """

    __tablename__ = "monitoring_config"

    config_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
        comment="Unique identifier for config"
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        comment="Active config flag (one active row)"
    )

    # Endpoint
    url: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
        comment="Monitoring endpoint base URL"
    )

    # Credentials
    api_token_encrypted: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="AES-256-CBC ciphertext of API token (hex)"
    )

    api_token_iv: Mapped[Optional[str]] = mapped_column(
        String(32),
        nullable=True,
        comment="IV for API token (hex)"
    )

    username: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Username for session login"
    )

    password_encrypted: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="AES-256-CBC ciphertext of password (hex)"
    )

    password_iv: Mapped[Optional[str]] = mapped_column(
        String(32),
        nullable=True,
        comment="IV for password (hex)"
    )

    # Scheduling
    enabled: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Polling enabled"
    )

    poll_interval: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=5,
        comment="Poll interval in minutes (1-60)"
    )

    # Last poll outcome
    last_poll_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(timezone=True),
        nullable=True,
        comment="Last successful poll"
    )

    last_error: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Last poll error message"
    )

    last_error_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(timezone=True),
        nullable=True,
        comment="When last error occurred"
    )

    # Cumulative statistics
    total_polls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    successful_polls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_polls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    alerts_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # =========================================================
    # CREDENTIAL HELPERS
    # =========================================================

    @property
    def has_api_token(self) -> bool:
        return bool(self.api_token_encrypted and self.api_token_iv)

    @property
    def has_password(self) -> bool:
        return bool(self.password_encrypted and self.password_iv)

    @property
    def has_credentials(self) -> bool:
        """A token, or a username/password pair, is present."""
        return self.has_api_token or (bool(self.username) and self.has_password)

    def set_api_token(self, cipher: Any, token: Optional[str]) -> None:
        """Encrypt and store a token. Empty or None clears it."""
        if not token:
            self.api_token_encrypted = None
            self.api_token_iv = None
            return
        secret = cipher.encrypt(token)
        self.api_token_encrypted = secret.ciphertext
        self.api_token_iv = secret.iv

    def set_password(self, cipher: Any, password: Optional[str]) -> None:
        """Encrypt and store a password. Empty or None clears it."""
        if not password:
            self.password_encrypted = None
            self.password_iv = None
            return
        secret = cipher.encrypt(password)
        self.password_encrypted = secret.ciphertext
        self.password_iv = secret.iv

    def decrypt_api_token(self, cipher: Any) -> Optional[str]:
        if not self.has_api_token:
            return None
        return cipher.decrypt(self.api_token_encrypted, self.api_token_iv)

    def decrypt_password(self, cipher: Any) -> Optional[str]:
        if not self.has_password:
            return None
        return cipher.decrypt(self.password_encrypted, self.password_iv)

    # =========================================================
    # VIEWS
    # =========================================================

    @property
    def stats(self) -> Dict[str, int]:
        return {
            "total_polls": self.total_polls or 0,
            "successful_polls": self.successful_polls or 0,
            "failed_polls": self.failed_polls or 0,
            "alerts_processed": self.alerts_processed or 0,
        }

    def to_public_dict(self) -> Dict[str, Any]:
        """Redacted view: secrets reduced to presence flags."""
        return {
            "url": self.url,
            "username": self.username,
            "has_token": self.has_api_token,
            "has_password": self.has_password,
            "enabled": bool(self.enabled),
            "poll_interval": self.poll_interval,
            "last_poll_at": to_iso8601(self.last_poll_at),
            "last_error": self.last_error,
            "last_error_at": to_iso8601(self.last_error_at),
            "stats": self.stats,
        }

    def __repr__(self) -> str:
        return f"<MonitoringConfig url={self.url!r} enabled={self.enabled}>"


class ZabbixAlert(Base, TimestampMixin):
    """
    Alert mirrored from the monitoring system.

    ============================================================
    PURPOSE
    ============================================================
    One row per external alert identifier. Status, acknowledgment
    and resolution fields are refreshed on each sighting; the
    creation metadata and notification bookkeeping are preserved.

    ============================================================
    INVARIANTS
    ============================================================
    - alert_id is unique
    - resolved implies status == OK
    - acknowledged implies acknowledged_at is set

    ============================================================
    """

    __tablename__ = "zabbix_alerts"

    record_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
        comment="Internal row identifier"
    )

    alert_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        unique=True,
        comment="External alert identifier (event/object/problem id)"
    )

    # Source
    trigger_id: Mapped[str] = mapped_column(String(100), nullable=False)
    host_id: Mapped[str] = mapped_column(String(100), nullable=False)
    host: Mapped[str] = mapped_column(String(255), nullable=False)
    trigger_name: Mapped[str] = mapped_column(String(500), nullable=False)
    trigger_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Classification
    severity: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="0 not classified .. 4 disaster"
    )

    status: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        default=AlertStatus.PROBLEM.value,
        comment="OK or PROBLEM"
    )

    message: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # Timing
    event_time: Mapped[datetime] = mapped_column(UTCDateTime(timezone=True), nullable=False)
    update_time: Mapped[datetime] = mapped_column(UTCDateTime(timezone=True), nullable=False)

    # Acknowledgment
    acknowledged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    acknowledged_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(timezone=True), nullable=True)

    # Resolution
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(timezone=True), nullable=True)

    # Diagnostics
    raw_payload: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        JSONType,
        nullable=True,
        comment="Raw upstream problem payload"
    )

    # Notification bookkeeping
    notification_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notification_sent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(timezone=True), nullable=True)
    notified_group_ids: Mapped[Optional[List[str]]] = mapped_column(
        JSONType,
        nullable=True,
        comment="Groups actually notified"
    )

    __table_args__ = (
        Index("idx_zbx_alert_status_resolved", "status", "resolved"),
        Index("idx_zbx_alert_severity", "severity"),
        Index("idx_zbx_alert_host", "host"),
        Index("idx_zbx_alert_event_time", "event_time"),
    )

    @property
    def severity_label(self) -> str:
        return Severity.coerce(self.severity).label

    @property
    def severity_emoji(self) -> str:
        return Severity.coerce(self.severity).emoji

    @property
    def is_critical(self) -> bool:
        return Severity.coerce(self.severity) >= Severity.HIGH

    @property
    def is_active(self) -> bool:
        return self.status == AlertStatus.PROBLEM.value and not self.resolved

    def duration_seconds(self, now: datetime) -> float:
        """Seconds the problem has been (or was) open."""
        end = self.resolved_at if self.resolved and self.resolved_at else now
        return max(0.0, (ensure_utc(end) - ensure_utc(self.event_time)).total_seconds())

    def to_dict(self, include_payload: bool = False) -> Dict[str, Any]:
        data = {
            "alert_id": self.alert_id,
            "trigger_id": self.trigger_id,
            "host_id": self.host_id,
            "host": self.host,
            "trigger_name": self.trigger_name,
            "trigger_description": self.trigger_description,
            "severity": self.severity,
            "severity_label": self.severity_label,
            "status": self.status,
            "message": self.message,
            "event_time": to_iso8601(self.event_time),
            "update_time": to_iso8601(self.update_time),
            "acknowledged": self.acknowledged,
            "acknowledged_by": self.acknowledged_by,
            "acknowledged_at": to_iso8601(self.acknowledged_at),
            "resolved": self.resolved,
            "resolved_at": to_iso8601(self.resolved_at),
            "notification_sent": self.notification_sent,
            "notification_sent_at": to_iso8601(self.notification_sent_at),
            "notified_group_ids": list(self.notified_group_ids or []),
        }
        if include_payload:
            data["raw_payload"] = self.raw_payload
        return data

    def __repr__(self) -> str:
        return f"<ZabbixAlert {self.alert_id} {self.host} sev={self.severity} {self.status}>"


class NotificationGroup(Base, TimestampMixin):
    """
    Named recipient set with filter rule.

    ============================================================
    MATCHING
    ============================================================
    Empty filter lists mean "match all" for that dimension.
    Priority orders evaluation only; every enabled group is
    evaluated.

    ============================================================
    DESTINATION
    ============================================================
    Either a shared chat (telegram_chat_id, optionally with its
    own encrypted bot token) or the personal handles of the
    members listed in member_ids.

    ============================================================
    """

    __tablename__ = "notification_groups"

    group_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
        comment="Unique identifier for group"
    )

    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    description: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Recipients
    member_ids: Mapped[Optional[List[str]]] = mapped_column(
        JSONType,
        nullable=True,
        comment="Subscriber identifiers"
    )

    telegram_chat_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        comment="Shared chat destination"
    )

    telegram_bot_token_encrypted: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    telegram_bot_token_iv: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    # Filters
    trigger_ids: Mapped[Optional[List[str]]] = mapped_column(JSONType, nullable=True)
    host_patterns: Mapped[Optional[List[str]]] = mapped_column(JSONType, nullable=True)
    severity_levels: Mapped[Optional[List[int]]] = mapped_column(JSONType, nullable=True)

    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    priority: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Ordering hint 0-100"
    )

    # Settings
    notify_on_resolve: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notify_on_acknowledge: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    min_notification_interval: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Minutes between notifications (0 = no limit)"
    )

    # Statistics
    alerts_matched: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    notifications_sent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_match_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(timezone=True), nullable=True)
    last_notification_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_notif_group_enabled_priority", "enabled", "priority"),
    )

    @property
    def has_chat_destination(self) -> bool:
        return bool(self.telegram_chat_id)

    @property
    def has_bot_token(self) -> bool:
        return bool(self.telegram_bot_token_encrypted and self.telegram_bot_token_iv)

    def set_bot_token(self, cipher: Any, token: Optional[str]) -> None:
        """Encrypt and store a group bot token. Empty or None clears it."""
        if not token:
            self.telegram_bot_token_encrypted = None
            self.telegram_bot_token_iv = None
            return
        secret = cipher.encrypt(token)
        self.telegram_bot_token_encrypted = secret.ciphertext
        self.telegram_bot_token_iv = secret.iv

    def decrypt_bot_token(self, cipher: Any) -> Optional[str]:
        if not self.has_bot_token:
            return None
        return cipher.decrypt(self.telegram_bot_token_encrypted, self.telegram_bot_token_iv)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.group_id),
            "name": self.name,
            "description": self.description,
            "member_ids": list(self.member_ids or []),
            "telegram_chat_id": self.telegram_chat_id,
            "has_bot_token": self.has_bot_token,
            "trigger_ids": list(self.trigger_ids or []),
            "host_patterns": list(self.host_patterns or []),
            "severity_levels": list(self.severity_levels or []),
            "enabled": bool(self.enabled),
            "priority": self.priority or 0,
            "settings": {
                "notify_on_resolve": bool(self.notify_on_resolve),
                "notify_on_acknowledge": bool(self.notify_on_acknowledge),
                "min_notification_interval": self.min_notification_interval or 0,
            },
            "stats": {
                "alerts_matched": self.alerts_matched or 0,
                "notifications_sent": self.notifications_sent or 0,
                "last_match_at": to_iso8601(self.last_match_at),
                "last_notification_at": to_iso8601(self.last_notification_at),
            },
        }

    def __repr__(self) -> str:
        return f"<NotificationGroup {self.name!r} priority={self.priority}>"


class Subscriber(Base, TimestampMixin):
    """
    Directory entry for an individual recipient.

    subscriber_id is the external user identifier referenced by
    NotificationGroup.member_ids.
    """

    __tablename__ = "notification_subscribers"

    subscriber_id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        comment="External user identifier"
    )

    display_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    telegram_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        comment="Personal chat id; None means unreachable"
    )

    telegram_username: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    @property
    def is_reachable(self) -> bool:
        return bool(self.is_active and self.telegram_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.subscriber_id,
            "display_name": self.display_name,
            "email": self.email,
            "telegram_id": self.telegram_id,
            "telegram_username": self.telegram_username,
            "is_active": bool(self.is_active),
            "reachable": self.is_reachable,
        }

    def __repr__(self) -> str:
        return f"<Subscriber {self.subscriber_id} telegram={bool(self.telegram_id)}>"
