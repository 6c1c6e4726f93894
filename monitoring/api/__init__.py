"""
Zabbix admin API.
"""

from .router import ApiError, install_error_handlers, router


__all__ = [
    "ApiError",
    "install_error_handlers",
    "router",
]
