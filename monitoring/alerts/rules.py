"""
Notification Rule Matcher.

============================================================
PURPOSE
============================================================
Decides which notification groups receive a given alert.

A group matches when every configured filter passes:
1. severity allowlist empty, or alert severity in it
2. trigger-id allowlist empty, or alert trigger id in it
3. host pattern list empty, or any pattern matches the host
   (case-insensitive regex; substring check when the pattern
   is not a valid regex)

Empty filters are open ("match all"), never exclusionary.

A matching group is eligible only if its rate limit allows a
notification now. Rate-limited groups are skipped silently but
still count as matched.

============================================================
ORDERING
============================================================
All enabled groups are evaluated in priority-descending order.
Priority is an ordering hint only, never a short-circuit.

============================================================
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, List, Optional

from core.clock import ClockProtocol, SystemClock, ensure_utc


logger = logging.getLogger(__name__)


# ============================================================
# FILTER PREDICATES
# ============================================================

def severity_matches(severity_levels: Optional[Iterable[Any]], severity: int) -> bool:
    levels = list(severity_levels or [])
    if not levels:
        return True
    allowed = set()
    for level in levels:
        try:
            allowed.add(int(level))
        except (TypeError, ValueError):
            logger.warning(f"Ignoring non-numeric severity filter value: {level!r}")
    return int(severity) in allowed


def trigger_matches(trigger_ids: Optional[Iterable[Any]], trigger_id: str) -> bool:
    ids = [str(t) for t in (trigger_ids or [])]
    if not ids:
        return True
    return str(trigger_id) in ids


def host_pattern_matches(pattern: str, host: str) -> bool:
    """Case-insensitive regex search, substring fallback for invalid patterns."""
    try:
        return re.search(pattern, host, re.IGNORECASE) is not None
    except re.error:
        return pattern.lower() in host.lower()


def host_matches(host_patterns: Optional[Iterable[str]], host: str) -> bool:
    patterns = [p for p in (host_patterns or []) if p]
    if not patterns:
        return True
    return any(host_pattern_matches(pattern, host or "") for pattern in patterns)


def group_matches_alert(group: Any, alert: Any) -> bool:
    """All configured filters of the group pass for the alert."""
    return (
        severity_matches(group.severity_levels, alert.severity)
        and trigger_matches(group.trigger_ids, alert.trigger_id)
        and host_matches(group.host_patterns, alert.host)
    )


def can_send_notification(group: Any, now: datetime) -> bool:
    """
    Rate-limit check.

    True if no interval is configured, the group was never
    notified, or more than the interval has elapsed since the
    last notification.
    """
    interval = group.min_notification_interval or 0
    if interval <= 0 or group.last_notification_at is None:
        return True
    elapsed_minutes = (now - ensure_utc(group.last_notification_at)).total_seconds() / 60.0
    return elapsed_minutes > interval


# ============================================================
# DIAGNOSTICS
# ============================================================

@dataclass
class GroupEvaluation:
    """Why a group did or did not match an alert."""

    group_id: str
    group_name: str
    enabled: bool
    matched: bool
    rate_limited: bool
    reasons: List[str] = field(default_factory=list)

    @property
    def eligible(self) -> bool:
        return self.enabled and self.matched and not self.rate_limited

    def to_dict(self) -> dict:
        return {
            "group_id": self.group_id,
            "group_name": self.group_name,
            "enabled": self.enabled,
            "matched": self.matched,
            "rate_limited": self.rate_limited,
            "eligible": self.eligible,
            "reasons": list(self.reasons),
        }


def evaluate_group(group: Any, alert: Any, now: datetime) -> GroupEvaluation:
    reasons = []
    if not group.enabled:
        reasons.append("group disabled")
    if not severity_matches(group.severity_levels, alert.severity):
        reasons.append(f"severity {alert.severity} not in {list(group.severity_levels or [])}")
    if not trigger_matches(group.trigger_ids, alert.trigger_id):
        reasons.append(f"trigger {alert.trigger_id} not in allowlist")
    if not host_matches(group.host_patterns, alert.host):
        reasons.append(f"host {alert.host!r} matches no pattern")

    matched = group_matches_alert(group, alert)
    rate_limited = matched and not can_send_notification(group, now)
    if rate_limited:
        reasons.append(
            f"rate limited ({group.min_notification_interval} min since last notification)"
        )

    return GroupEvaluation(
        group_id=str(group.group_id),
        group_name=group.name,
        enabled=bool(group.enabled),
        matched=matched,
        rate_limited=rate_limited,
        reasons=reasons,
    )


# ============================================================
# MATCHER
# ============================================================

class NotificationRuleMatcher:
    """
    Finds eligible notification groups for an alert.

    Long-lived; the group repository is passed per call so the
    matcher is bound to whatever session the poll cycle uses.
    """

    def __init__(self, clock: Optional[ClockProtocol] = None):
        self._clock = clock or SystemClock()

    def find_eligible_groups(
        self,
        alert: Any,
        groups_repo: Any,
        record_stats: bool = True,
    ) -> List[Any]:
        """
        Evaluate every enabled group for the alert.

        Args:
            alert: ZabbixAlert or AlertRecord
            groups_repo: NotificationGroupRepository
            record_stats: Increment alerts_matched on matched groups

        Returns:
            Eligible groups in priority order
        """
        now = self._clock.now()
        eligible = []

        for group in groups_repo.list_enabled_by_priority():
            if not group_matches_alert(group, alert):
                continue

            if record_stats:
                groups_repo.record_match(group, now)

            if not can_send_notification(group, now):
                logger.info(
                    f"Group '{group.name}' matched alert {alert.alert_id} but is rate limited"
                )
                continue

            eligible.append(group)

        logger.info(f"Alert {alert.alert_id}: {len(eligible)} eligible groups")
        return eligible

    def explain(self, alert: Any, groups: Iterable[Any]) -> List[GroupEvaluation]:
        now = self._clock.now()
        return [evaluate_group(group, alert, now) for group in groups]
