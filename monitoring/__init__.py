"""
Zabbix Alert Bridge - Monitoring Package.

============================================================
PURPOSE
============================================================
Poll-transform-match-notify pipeline for one external
monitoring source (Zabbix) delivering to Telegram.

============================================================
COMPONENTS
============================================================
- credentials: encrypt/decrypt stored secrets
- zabbix/: JSON-RPC client with retry and re-authentication
- alerts/: problem transformer and notification rule matcher
- notifications/: Telegram formatting, fallback ladder, dispatcher
- poller: poll orchestrator with single-flight guard
- scheduler: cron-style timer driving the poller
- api/: FastAPI admin surface

============================================================
"""

from .models import (
    ACTIONABLE_SEVERITIES,
    AlertRecord,
    AlertStatus,
    DispatchResult,
    PollResult,
    PollState,
    SaveResult,
    Severity,
    UpsertResult,
)

__all__ = [
    "ACTIONABLE_SEVERITIES",
    "AlertRecord",
    "AlertStatus",
    "DispatchResult",
    "PollResult",
    "PollState",
    "SaveResult",
    "Severity",
    "UpsertResult",
]
