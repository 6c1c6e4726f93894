"""
Core Module - Exceptions.

============================================================
EXCEPTION HIERARCHY
============================================================
IntegrationException (base)
└── ConfigurationError

Client-side errors for the monitoring endpoint live in
monitoring.zabbix.exceptions; persistence errors live in
storage.repositories.exceptions.

============================================================
"""

from typing import Any, Dict, Optional


class IntegrationException(Exception):
    """
    Base exception for the alert bridge.

    str() is the bare message so it can be stored as
    last_error on the config row unchanged.
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.message = message
        self.context = dict(context or {})
        self.cause = cause
        if cause is not None:
            self.context["cause"] = f"{type(cause).__name__}: {cause}"


class ConfigurationError(IntegrationException):
    """
    Integration is unusable with its current config (bad URL,
    no credentials, endpoint refused the probe).

    Ends a poll cycle as failed without touching the breaker.
    """

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.config_key = config_key
        if config_key:
            self.context["config_key"] = config_key
