"""
Zabbix Client Exceptions.

============================================================
HIERARCHY
============================================================
ZabbixError (base)
├── ZabbixConnectionError      refused / timeout / DNS  (retried)
├── ZabbixAuthenticationError  invalid or expired token (re-login)
├── ZabbixAPIError             JSON-RPC error object
└── ZabbixHTTPError            non-2xx HTTP status

Every error carries the RPC method and a classification string
used in attempt logs.

============================================================
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional


class ZabbixError(Exception):
    """Base exception for monitoring endpoint failures."""
    
    classification = "error"
    
    def __init__(
        self,
        message: str,
        method: Optional[str] = None,
        original_error: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.method = method
        self.original_error = original_error
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)
    
    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "classification": self.classification,
            "message": self.message,
            "method": self.method,
            "original_error": str(self.original_error) if self.original_error else None,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }
    
    def __str__(self) -> str:
        parts = [self.message]
        if self.method:
            parts.append(f"[method={self.method}]")
        if self.original_error:
            parts.append(f"(caused by: {self.original_error})")
        return " ".join(parts)


class ZabbixConnectionError(ZabbixError):
    """Endpoint unreachable: connection refused, timeout or DNS failure."""
    
    classification = "connection"


class ZabbixAuthenticationError(ZabbixError):
    """Token rejected, or session login failed."""
    
    classification = "authentication"


class ZabbixAPIError(ZabbixError):
    """JSON-RPC error returned by the API."""
    
    classification = "api"
    
    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        data: Optional[str] = None,
        method: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, method=method, context=context)
        self.code = code
        self.data = data
    
    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"code": self.code, "data": self.data})
        return data
    
    def __str__(self) -> str:
        detail = f": {self.data}" if self.data else ""
        return f"Zabbix API error {self.code}: {self.message}{detail} [method={self.method}]"


class ZabbixHTTPError(ZabbixError):
    """Non-2xx HTTP response."""
    
    classification = "http"
    
    def __init__(
        self,
        message: str,
        status_code: int,
        response_body: Optional[str] = None,
        method: Optional[str] = None,
    ) -> None:
        super().__init__(message, method=method)
        self.status_code = status_code
        self.response_body = response_body
    
    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"status_code": self.status_code, "response_body": self.response_body})
        return data
    
    def is_server_error(self) -> bool:
        return 500 <= self.status_code < 600
