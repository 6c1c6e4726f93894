"""
Monitoring Integration Repositories.

============================================================
PURPOSE
============================================================
Data access for the Zabbix alert bridge.

============================================================
REPOSITORIES
============================================================
- MonitoringConfigRepository: singleton config + poll stats
- AlertRepository: alert store (upsert, batch save, reconcile)
- NotificationGroupRepository: groups + match/notify counters
- SubscriberRepository: personal messaging handles
- MonitoringRepositories: bundle bound to one session

============================================================
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from sqlalchemy import desc, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from monitoring.models import AlertRecord, AlertStatus, SaveResult, UpsertResult
from storage.models.monitoring import (
    MonitoringConfig,
    NotificationGroup,
    Subscriber,
    ZabbixAlert,
)
from storage.repositories.base import BaseRepository
from storage.repositories.exceptions import (
    RecordNotFoundError,
    RepositoryException,
)


MIN_POLL_INTERVAL = 1
MAX_POLL_INTERVAL = 60


def clamp_poll_interval(value: Optional[int], default: int = 5) -> int:
    if value is None:
        return default
    return max(MIN_POLL_INTERVAL, min(MAX_POLL_INTERVAL, int(value)))


class MonitoringConfigRepository(BaseRepository[MonitoringConfig]):
    """
    Repository for the monitoring endpoint configuration.

    ============================================================
    SCOPE
    ============================================================
    One active row per deployment, created lazily from
    environment seeds. Stats writes are last-writer-wins.

    ============================================================
    """

    def __init__(self, session: Session) -> None:
        super().__init__(session, MonitoringConfig, "MonitoringConfigRepository")

    def get_active(self) -> Optional[MonitoringConfig]:
        stmt = (
            select(MonitoringConfig)
            .where(MonitoringConfig.is_active.is_(True))
            .order_by(MonitoringConfig.created_at)
            .limit(1)
        )
        return self._execute_scalar(stmt)

    def get_or_create_default(self, settings: Any, cipher: Any) -> MonitoringConfig:
        """
        Get the active config, creating it from settings if absent.

        Args:
            settings: IntegrationSettings carrying ZABBIX_* seeds
            cipher: CredentialCipher used to encrypt seeded secrets

        Returns:
            The active MonitoringConfig
        """
        config = self.get_active()
        if config is not None:
            return config

        config = MonitoringConfig(
            is_active=True,
            url=settings.zabbix_url,
            username=settings.zabbix_username,
            enabled=bool(settings.zabbix_enabled),
            poll_interval=clamp_poll_interval(settings.zabbix_poll_interval),
            total_polls=0,
            successful_polls=0,
            failed_polls=0,
            alerts_processed=0,
        )
        config.set_api_token(cipher, settings.zabbix_api_token)
        config.set_password(cipher, settings.zabbix_password)
        self._add(config)
        self._logger.info(
            f"Created default monitoring config (url set: {bool(config.url)}, "
            f"enabled: {config.enabled})"
        )
        return config

    def apply_update(
        self,
        config: MonitoringConfig,
        cipher: Any,
        changes: Dict[str, Any],
    ) -> MonitoringConfig:
        """
        Apply an admin update.

        Keys absent from changes are left untouched. For api_token
        and password an empty string clears the stored secret.
        """
        if "url" in changes:
            url = changes["url"]
            config.url = url.strip() if url else None
        if "username" in changes:
            config.username = changes["username"] or None
        if "api_token" in changes and changes["api_token"] is not None:
            config.set_api_token(cipher, changes["api_token"])
        if "password" in changes and changes["password"] is not None:
            config.set_password(cipher, changes["password"])
        if "enabled" in changes and changes["enabled"] is not None:
            config.enabled = bool(changes["enabled"])
        if "poll_interval" in changes and changes["poll_interval"] is not None:
            config.poll_interval = clamp_poll_interval(changes["poll_interval"])

        self._flush("apply_update")
        return config

    def is_enabled(self, config: MonitoringConfig) -> bool:
        """Read the enabled flag straight from the database."""
        stmt = select(MonitoringConfig.enabled).where(
            MonitoringConfig.config_id == config.config_id
        )
        try:
            return bool(self._session.execute(stmt).scalar())
        except SQLAlchemyError as e:
            self._handle_db_error(e, "is_enabled")
            raise

    # =========================================================
    # POLL STATISTICS
    # =========================================================

    def record_success(
        self,
        config: MonitoringConfig,
        alerts_processed: int,
        at: datetime,
    ) -> None:
        config.last_poll_at = at
        config.last_error = None
        config.last_error_at = None
        config.total_polls = (config.total_polls or 0) + 1
        config.successful_polls = (config.successful_polls or 0) + 1
        config.alerts_processed = (config.alerts_processed or 0) + alerts_processed
        self._flush("record_success")

    def record_error(
        self,
        config: MonitoringConfig,
        message: str,
        at: datetime,
    ) -> None:
        config.last_error = message[:2000]
        config.last_error_at = at
        config.total_polls = (config.total_polls or 0) + 1
        config.failed_polls = (config.failed_polls or 0) + 1
        self._flush("record_error")


class AlertRepository(BaseRepository[ZabbixAlert]):
    """
    Alert store keyed by the external alert identifier.

    ============================================================
    SEMANTICS
    ============================================================
    - upsert: update mutable fields in place if the alert_id
      exists, insert otherwise; report whether it was a fresh
      insert
    - save_all: per-record upsert inside a savepoint; failures
      are collected, never abort the batch
    - reconcile_resolved: resolve anything no longer reported
      active upstream

    ============================================================
    """

    # Refreshed on every sighting; creation metadata is kept
    MUTABLE_FIELDS = (
        "status",
        "update_time",
        "message",
        "acknowledged",
        "acknowledged_by",
        "acknowledged_at",
        "resolved",
        "resolved_at",
        "raw_payload",
    )

    def __init__(self, session: Session) -> None:
        super().__init__(session, ZabbixAlert, "AlertRepository")

    # =========================================================
    # LOOKUPS
    # =========================================================

    def get_by_alert_id(self, alert_id: str) -> Optional[ZabbixAlert]:
        stmt = select(ZabbixAlert).where(ZabbixAlert.alert_id == alert_id)
        return self._execute_scalar(stmt)

    def get_by_alert_id_or_raise(self, alert_id: str) -> ZabbixAlert:
        alert = self.get_by_alert_id(alert_id)
        if alert is None:
            raise RecordNotFoundError(self._repository_name, alert_id, "alert_id")
        return alert

    def count_for_alert_id(self, alert_id: str) -> int:
        return self._count(ZabbixAlert.alert_id == alert_id)

    def list_unresolved(self) -> List[ZabbixAlert]:
        stmt = (
            select(ZabbixAlert)
            .where(
                ZabbixAlert.resolved.is_(False),
                ZabbixAlert.status == AlertStatus.PROBLEM.value,
            )
            .order_by(desc(ZabbixAlert.event_time))
        )
        return self._execute_query(stmt)

    def list_alerts(
        self,
        status: Optional[str] = None,
        severity: Optional[int] = None,
        resolved: Optional[bool] = None,
        host: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[ZabbixAlert], int]:
        """
        Filtered, paginated alert listing, newest first.

        Returns:
            (page of alerts, total matching count)
        """
        criteria = []
        if status:
            criteria.append(ZabbixAlert.status == status)
        if severity is not None:
            criteria.append(ZabbixAlert.severity == severity)
        if resolved is not None:
            criteria.append(ZabbixAlert.resolved.is_(resolved))
        if host:
            criteria.append(ZabbixAlert.host.ilike(f"%{host}%"))

        stmt = select(ZabbixAlert)
        if criteria:
            stmt = stmt.where(*criteria)
        stmt = stmt.order_by(desc(ZabbixAlert.event_time)).offset(offset).limit(limit)

        return self._execute_query(stmt), self._count(*criteria)

    def list_notification_candidates(self, alert_ids: Sequence[str]) -> List[ZabbixAlert]:
        """Alerts among alert_ids that are still open and not yet notified."""
        if not alert_ids:
            return []
        stmt = (
            select(ZabbixAlert)
            .where(
                ZabbixAlert.alert_id.in_(list(alert_ids)),
                ZabbixAlert.resolved.is_(False),
                ZabbixAlert.status == AlertStatus.PROBLEM.value,
                ZabbixAlert.notification_sent.is_(False),
            )
            .order_by(desc(ZabbixAlert.severity), ZabbixAlert.event_time)
        )
        return self._execute_query(stmt)

    def count_by_status(self) -> Dict[str, int]:
        stmt = select(ZabbixAlert.status, func.count()).group_by(ZabbixAlert.status)
        try:
            rows = self._session.execute(stmt).all()
        except SQLAlchemyError as e:
            self._handle_db_error(e, "count_by_status")
            raise
        counts = {status.value: 0 for status in AlertStatus}
        counts.update({status: count for status, count in rows})
        return counts

    # =========================================================
    # WRITES
    # =========================================================

    def upsert(self, record: AlertRecord) -> UpsertResult:
        """
        Insert or refresh one alert.

        Args:
            record: Transformed alert

        Returns:
            UpsertResult with created=True only for fresh inserts
        """
        values = record.to_column_values()
        existing = self.get_by_alert_id(record.alert_id)

        if existing is not None:
            for name in self.MUTABLE_FIELDS:
                setattr(existing, name, values[name])
            self._flush("upsert.update", {"alert_id": record.alert_id})
            return UpsertResult(alert_id=record.alert_id, created=False)

        alert = ZabbixAlert(
            notification_sent=False,
            notified_group_ids=[],
            **values,
        )
        self._add(alert, {"alert_id": record.alert_id})
        return UpsertResult(alert_id=record.alert_id, created=True)

    def save_all(self, records: Iterable[AlertRecord]) -> SaveResult:
        """
        Upsert a batch of alerts, isolating failures per record.

        Returns:
            SaveResult with counts, fresh ids and collected errors
        """
        result = SaveResult()

        for record in records:
            try:
                with self._savepoint("save_all"):
                    outcome = self.upsert(record)
            except (RepositoryException, SQLAlchemyError) as e:
                self._logger.warning(f"Failed to save alert {record.alert_id}: {e}")
                result.errors.append({"alert_id": record.alert_id, "error": str(e)})
                continue

            if outcome.created:
                result.saved_count += 1
                result.new_ids.append(outcome.alert_id)
            else:
                result.updated_count += 1

        self._logger.info(
            f"Saved alerts: {result.saved_count} new, {result.updated_count} updated, "
            f"{len(result.errors)} errors"
        )
        return result

    def reconcile_resolved(self, active_ids: Iterable[str], now: datetime) -> List[str]:
        """
        Resolve open alerts no longer reported active upstream.

        Args:
            active_ids: External ids currently active upstream
            now: Resolution timestamp

        Returns:
            alert_ids that were marked resolved
        """
        active = set(active_ids)
        resolved_ids = []

        for alert in self.list_unresolved():
            if alert.alert_id in active:
                continue
            alert.resolved = True
            alert.resolved_at = now
            alert.status = AlertStatus.OK.value
            alert.update_time = now
            resolved_ids.append(alert.alert_id)

        if resolved_ids:
            self._flush("reconcile_resolved")
            self._logger.info(f"Marked {len(resolved_ids)} alerts as resolved")
        return resolved_ids

    def mark_notification_sent(
        self,
        alert: ZabbixAlert,
        group_ids: List[str],
        now: datetime,
    ) -> None:
        alert.notification_sent = True
        alert.notification_sent_at = now
        alert.notified_group_ids = list(group_ids)
        self._flush("mark_notification_sent", {"alert_id": alert.alert_id})

    def mark_acknowledged(
        self,
        alert: ZabbixAlert,
        acknowledged_by: Optional[str],
        now: datetime,
    ) -> None:
        alert.acknowledged = True
        alert.acknowledged_by = acknowledged_by
        alert.acknowledged_at = now
        alert.update_time = now
        self._flush("mark_acknowledged", {"alert_id": alert.alert_id})


class NotificationGroupRepository(BaseRepository[NotificationGroup]):
    """
    Repository for notification groups.

    Evaluation order is priority descending, then name, so a
    cycle always walks groups in the same order.
    """

    EDITABLE_FIELDS = (
        "name",
        "description",
        "member_ids",
        "telegram_chat_id",
        "trigger_ids",
        "host_patterns",
        "severity_levels",
        "enabled",
        "priority",
        "notify_on_resolve",
        "notify_on_acknowledge",
        "min_notification_interval",
    )

    def __init__(self, session: Session) -> None:
        super().__init__(session, NotificationGroup, "NotificationGroupRepository")

    @staticmethod
    def _coerce_id(group_id: Union[str, uuid.UUID]) -> Optional[uuid.UUID]:
        if isinstance(group_id, uuid.UUID):
            return group_id
        try:
            return uuid.UUID(str(group_id))
        except ValueError:
            return None

    def get(self, group_id: Union[str, uuid.UUID]) -> Optional[NotificationGroup]:
        key = self._coerce_id(group_id)
        return self._get(key) if key is not None else None

    def get_or_raise(self, group_id: Union[str, uuid.UUID]) -> NotificationGroup:
        group = self.get(group_id)
        if group is None:
            raise RecordNotFoundError(self._repository_name, group_id, "group_id")
        return group

    def list_all(self) -> List[NotificationGroup]:
        stmt = select(NotificationGroup).order_by(
            desc(NotificationGroup.priority), NotificationGroup.name
        )
        return self._execute_query(stmt)

    def list_enabled_by_priority(self) -> List[NotificationGroup]:
        stmt = (
            select(NotificationGroup)
            .where(NotificationGroup.enabled.is_(True))
            .order_by(desc(NotificationGroup.priority), NotificationGroup.name)
        )
        return self._execute_query(stmt)

    def create(
        self,
        cipher: Any,
        fields: Dict[str, Any],
        bot_token: Optional[str] = None,
    ) -> NotificationGroup:
        group = NotificationGroup(
            alerts_matched=0,
            notifications_sent=0,
            **{name: value for name, value in fields.items() if name in self.EDITABLE_FIELDS},
        )
        group.set_bot_token(cipher, bot_token)
        return self._add(group, {"name": fields.get("name")})

    def update(
        self,
        group: NotificationGroup,
        cipher: Any,
        changes: Dict[str, Any],
        bot_token: Optional[str] = None,
    ) -> NotificationGroup:
        """Apply changes; bot_token None leaves it, empty string clears it."""
        for name, value in changes.items():
            if name in self.EDITABLE_FIELDS:
                setattr(group, name, value)
        if bot_token is not None:
            group.set_bot_token(cipher, bot_token)
        self._flush("update", {"name": group.name})
        return group

    def delete(self, group: NotificationGroup) -> None:
        self._delete(group)

    def record_match(self, group: NotificationGroup, now: datetime) -> None:
        group.alerts_matched = (group.alerts_matched or 0) + 1
        group.last_match_at = now
        self._flush("record_match", {"name": group.name})

    def record_notification(self, group: NotificationGroup, now: datetime) -> None:
        group.notifications_sent = (group.notifications_sent or 0) + 1
        group.last_notification_at = now
        self._flush("record_notification", {"name": group.name})


class SubscriberRepository(BaseRepository[Subscriber]):
    """Directory of individual recipients and their Telegram handles."""

    def __init__(self, session: Session) -> None:
        super().__init__(session, Subscriber, "SubscriberRepository")

    def get(self, subscriber_id: str) -> Optional[Subscriber]:
        return self._get(subscriber_id)

    def list_all(self) -> List[Subscriber]:
        return self._execute_query(select(Subscriber).order_by(Subscriber.subscriber_id))

    def upsert(self, subscriber_id: str, fields: Dict[str, Any]) -> Subscriber:
        subscriber = self.get(subscriber_id)
        if subscriber is None:
            subscriber = Subscriber(subscriber_id=subscriber_id, is_active=True)
            for name, value in fields.items():
                setattr(subscriber, name, value)
            return self._add(subscriber, {"subscriber_id": subscriber_id})

        for name, value in fields.items():
            setattr(subscriber, name, value)
        self._flush("upsert", {"subscriber_id": subscriber_id})
        return subscriber

    def list_reachable(self, member_ids: Optional[Sequence[str]]) -> List[Subscriber]:
        """
        Members with an active personal Telegram handle.

        Order follows member_ids.
        """
        ids = [str(member_id) for member_id in (member_ids or [])]
        if not ids:
            return []
        stmt = select(Subscriber).where(Subscriber.subscriber_id.in_(ids))
        by_id = {s.subscriber_id: s for s in self._execute_query(stmt)}
        return [
            by_id[member_id]
            for member_id in ids
            if member_id in by_id and by_id[member_id].is_reachable
        ]


@dataclass
class MonitoringRepositories:
    """All monitoring repositories bound to one session."""

    session: Session
    config: MonitoringConfigRepository
    alerts: AlertRepository
    groups: NotificationGroupRepository
    subscribers: SubscriberRepository

    @classmethod
    def from_session(cls, session: Session) -> "MonitoringRepositories":
        return cls(
            session=session,
            config=MonitoringConfigRepository(session),
            alerts=AlertRepository(session),
            groups=NotificationGroupRepository(session),
            subscribers=SubscriberRepository(session),
        )
