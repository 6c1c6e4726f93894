"""
Core Module - Integration Settings.

============================================================
RESPONSIBILITY
============================================================
Loads process-level settings from the environment.

- Database location and application secret
- Seed values for the lazily-created monitoring config row
- Outbound call tuning (timeouts, retries)
- Logging and HTTP server options

Environment values only seed the persisted MonitoringConfig.
Once that row exists it is authoritative and is edited through
the admin API.

============================================================
"""

import os
from dataclasses import dataclass
from typing import List, Optional

from dotenv import load_dotenv


DEFAULT_APP_SECRET = "default-secret-key-change-in-production"
DEFAULT_DATABASE_URL = "sqlite:///./zabbix_bridge.db"


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("true", "1", "yes")


@dataclass
class IntegrationSettings:
    """
    Process-wide settings for the Zabbix alert bridge.
    """
    
    # Persistence
    database_url: str = DEFAULT_DATABASE_URL
    """SQLAlchemy database URL."""
    
    app_secret: str = DEFAULT_APP_SECRET
    """Secret the credential cipher key is derived from."""
    
    # Monitoring endpoint seeds
    zabbix_url: Optional[str] = None
    zabbix_api_token: Optional[str] = None
    zabbix_username: Optional[str] = None
    zabbix_password: Optional[str] = None
    zabbix_enabled: bool = False
    zabbix_poll_interval: int = 5
    """Poll interval in minutes (1-60)."""
    
    # Outbound call tuning
    request_timeout_seconds: float = 30.0
    """Per-RPC timeout."""
    
    max_retries: int = 3
    """Attempts per RPC before surfacing the error."""
    
    # Messaging
    telegram_bot_token: Optional[str] = None
    """Process-wide default bot credential."""
    
    alert_timezone: str = "Europe/Kiev"
    """Timezone event times are rendered in."""
    
    # Logging
    log_level: str = "INFO"
    log_format: str = "text"
    
    # HTTP server
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    
    @classmethod
    def from_env(cls) -> "IntegrationSettings":
        """Load configuration from environment variables."""
        load_dotenv()
        return cls(
            database_url=os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL),
            app_secret=os.getenv("APP_SECRET") or os.getenv("JWT_SECRET") or DEFAULT_APP_SECRET,
            zabbix_url=os.getenv("ZABBIX_URL") or None,
            zabbix_api_token=os.getenv("ZABBIX_API_TOKEN") or None,
            zabbix_username=os.getenv("ZABBIX_USERNAME") or None,
            zabbix_password=os.getenv("ZABBIX_PASSWORD") or None,
            zabbix_enabled=_env_bool("ZABBIX_ENABLED"),
            zabbix_poll_interval=int(os.getenv("ZABBIX_POLL_INTERVAL", "5")),
            request_timeout_seconds=float(os.getenv("ZABBIX_REQUEST_TIMEOUT", "30")),
            max_retries=int(os.getenv("ZABBIX_MAX_RETRIES", "3")),
            telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN") or None,
            alert_timezone=os.getenv("ALERT_TIMEZONE", "Europe/Kiev"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "text"),
            api_host=os.getenv("API_HOST", "0.0.0.0"),
            api_port=int(os.getenv("API_PORT", "8000")),
        )
    
    @property
    def uses_default_secret(self) -> bool:
        return self.app_secret == DEFAULT_APP_SECRET
    
    def validate(self) -> List[str]:
        """Validate configuration, return list of errors."""
        errors = []
        
        if not 1 <= self.zabbix_poll_interval <= 60:
            errors.append("zabbix_poll_interval must be between 1 and 60 minutes")
        
        if self.request_timeout_seconds <= 0:
            errors.append("request_timeout_seconds must be positive")
        
        if self.max_retries < 1:
            errors.append("max_retries must be at least 1")
        
        if self.log_format not in ("json", "text"):
            errors.append("log_format must be 'json' or 'text'")
        
        return errors
