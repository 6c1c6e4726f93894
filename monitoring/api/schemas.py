"""
Pydantic schemas for the Zabbix admin API.
"""
from datetime import datetime, timezone
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator

# =======================
# COMMON
# =======================

class ApiResponse(BaseModel):
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    data: Optional[Any] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

# =======================
# 1. CONFIG
# =======================

class ConfigUpdateRequest(BaseModel):
    """Omitted fields are left unchanged; "" clears a stored secret."""
    url: Optional[str] = None
    api_token: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    enabled: Optional[bool] = None
    poll_interval: Optional[int] = Field(default=None, ge=1, le=60)

    @field_validator("url")
    @classmethod
    def strip_url(cls, value: Optional[str]) -> Optional[str]:
        return value.strip() if value else value

class ConnectionTestRequest(BaseModel):
    """Values to test with; anything omitted comes from the stored config."""
    url: Optional[str] = None
    api_token: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None

# =======================
# 2. ALERTS
# =======================

class AcknowledgeRequest(BaseModel):
    message: Optional[str] = Field(default=None, max_length=2000)
    acknowledged_by: Optional[str] = None
    sync_upstream: bool = True

# =======================
# 3. NOTIFICATION GROUPS
# =======================

def _check_severities(levels: Optional[List[int]]) -> Optional[List[int]]:
    if levels is None:
        return levels
    for level in levels:
        if not 0 <= level <= 4:
            raise ValueError("severity levels must be between 0 and 4")
    return sorted(set(levels))

class GroupCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    member_ids: List[str] = Field(default_factory=list)
    telegram_chat_id: Optional[str] = None
    telegram_bot_token: Optional[str] = None
    trigger_ids: List[str] = Field(default_factory=list)
    host_patterns: List[str] = Field(default_factory=list)
    severity_levels: List[int] = Field(default_factory=list)
    enabled: bool = True
    priority: int = Field(default=0, ge=0, le=100)
    notify_on_resolve: bool = False
    notify_on_acknowledge: bool = False
    min_notification_interval: int = Field(default=0, ge=0)

    @field_validator("severity_levels")
    @classmethod
    def check_severities(cls, value: Optional[List[int]]) -> Optional[List[int]]:
        return _check_severities(value)

class GroupUpdateRequest(BaseModel):
    """Omitted fields are left unchanged; telegram_bot_token "" clears it."""
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    member_ids: Optional[List[str]] = None
    telegram_chat_id: Optional[str] = None
    telegram_bot_token: Optional[str] = None
    trigger_ids: Optional[List[str]] = None
    host_patterns: Optional[List[str]] = None
    severity_levels: Optional[List[int]] = None
    enabled: Optional[bool] = None
    priority: Optional[int] = Field(default=None, ge=0, le=100)
    notify_on_resolve: Optional[bool] = None
    notify_on_acknowledge: Optional[bool] = None
    min_notification_interval: Optional[int] = Field(default=None, ge=0)

    @field_validator("severity_levels")
    @classmethod
    def check_severities(cls, value: Optional[List[int]]) -> Optional[List[int]]:
        return _check_severities(value)

# =======================
# 4. SUBSCRIBERS
# =======================

class SubscriberUpdateRequest(BaseModel):
    display_name: Optional[str] = None
    email: Optional[str] = None
    telegram_id: Optional[str] = None
    telegram_username: Optional[str] = None
    is_active: Optional[bool] = None
