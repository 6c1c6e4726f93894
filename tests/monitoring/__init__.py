"""
Tests for the Zabbix alert bridge.

This package contains tests for:
- Credential encryption
- Problem transformation and rule matching
- Alert, group and subscriber repositories
- Zabbix client retry and re-authentication
- Telegram formatting fallback and dispatch
- Poll cycle, scheduler and admin API
"""
