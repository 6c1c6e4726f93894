"""
Core Module Package.

Infrastructure shared by storage and monitoring:

- clock: Unified time abstraction
- config: Environment-backed integration settings
- exceptions: Base exception hierarchy
- logging_config: Process-wide logging setup
"""

from .clock import ClockProtocol, MockClock, SystemClock, ensure_utc, to_iso8601
from .config import IntegrationSettings
from .exceptions import ConfigurationError, IntegrationException
from .logging_config import setup_logging

__all__ = [
    "ClockProtocol",
    "MockClock",
    "SystemClock",
    "ensure_utc",
    "to_iso8601",
    "IntegrationSettings",
    "ConfigurationError",
    "IntegrationException",
    "setup_logging",
]
