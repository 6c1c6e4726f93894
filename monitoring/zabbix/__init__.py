"""
Zabbix API access.

- client: JSON-RPC client with retry and re-authentication
- exceptions: classified client errors
- resilience: circuit breaker guarding the fetch path
"""

from .client import ConnectionProbe, EnrichedProblem, ZabbixClient
from .exceptions import (
    ZabbixAPIError,
    ZabbixAuthenticationError,
    ZabbixConnectionError,
    ZabbixError,
    ZabbixHTTPError,
)
from .resilience import CircuitBreaker, CircuitOpenError, CircuitState

__all__ = [
    "ConnectionProbe",
    "EnrichedProblem",
    "ZabbixClient",
    "ZabbixAPIError",
    "ZabbixAuthenticationError",
    "ZabbixConnectionError",
    "ZabbixError",
    "ZabbixHTTPError",
    "CircuitBreaker",
    "CircuitOpenError",
    "CircuitState",
]
