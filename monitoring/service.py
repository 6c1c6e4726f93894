"""
Zabbix Integration Wiring.

Builds the long-lived objects once per process and hands them to
the scheduler, the CLI and the admin API:

    cipher, client, breaker, matcher, dispatcher,
    orchestrator, scheduler
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.orm import sessionmaker

from core.clock import ClockProtocol, SystemClock
from core.config import IntegrationSettings
from monitoring.alerts.rules import NotificationRuleMatcher
from monitoring.credentials import CredentialCipher
from monitoring.notifications.dispatcher import NotificationDispatcher
from monitoring.notifications.telegram import TelegramClient, TelegramFormatter
from monitoring.poller import ZabbixPollOrchestrator
from monitoring.scheduler import CronScheduler, PollScheduler
from monitoring.zabbix.client import ZabbixClient
from monitoring.zabbix.resilience import CircuitBreaker
from storage.database import session_scope
from storage.repositories import MonitoringRepositories


logger = logging.getLogger(__name__)


@dataclass
class ZabbixIntegration:
    """Process-wide singletons of the integration."""

    settings: IntegrationSettings
    session_factory: sessionmaker
    clock: ClockProtocol
    cipher: CredentialCipher
    client: ZabbixClient
    breaker: CircuitBreaker
    matcher: NotificationRuleMatcher
    dispatcher: NotificationDispatcher
    orchestrator: ZabbixPollOrchestrator
    scheduler: PollScheduler

    def load_config(self) -> Any:
        """Active config row, created from settings on first use."""
        with session_scope(self.session_factory) as session:
            return MonitoringRepositories.from_session(session).config.get_or_create_default(
                self.settings, self.cipher
            )

    async def reinitialize_client(self, config: Optional[Any] = None) -> bool:
        """Re-read credentials into the client after a config change."""
        config = config or self.load_config()
        ready = await self.orchestrator.reinitialize_client(config)
        logger.info(f"Zabbix client re-initialized: ready={ready}")
        return ready

    def apply_schedule(self, config: Optional[Any] = None) -> bool:
        config = config or self.load_config()
        return self.scheduler.apply(config.enabled, config.poll_interval)

    async def start(self) -> None:
        config = self.load_config()
        if config.enabled and config.url:
            await self.reinitialize_client(config)
        self.apply_schedule(config)

    async def shutdown(self) -> None:
        self.scheduler.stop()
        await self.client.close()
        await self.dispatcher.close()
        logger.info("Zabbix integration stopped")


def build_integration(
    settings: IntegrationSettings,
    session_factory: sessionmaker,
    clock: Optional[ClockProtocol] = None,
    client: Optional[ZabbixClient] = None,
    default_telegram: Optional[TelegramClient] = None,
) -> ZabbixIntegration:
    """
    Construct the integration from settings.

    client and default_telegram may be injected (tests).
    """
    clock = clock or SystemClock()

    if settings.uses_default_secret:
        logger.warning("APP_SECRET not set, using the development default secret")

    cipher = CredentialCipher(settings.app_secret)
    client = client or ZabbixClient(
        timeout_seconds=settings.request_timeout_seconds,
        max_retries=settings.max_retries,
    )
    if default_telegram is None and settings.telegram_bot_token:
        default_telegram = TelegramClient(settings.telegram_bot_token)
    if default_telegram is None:
        logger.warning("TELEGRAM_BOT_TOKEN not set, only group bots can deliver")

    breaker = CircuitBreaker(name="zabbix", clock=clock)
    matcher = NotificationRuleMatcher(clock=clock)
    dispatcher = NotificationDispatcher(
        default_client=default_telegram,
        formatter=TelegramFormatter(settings.alert_timezone),
        cipher=cipher,
        clock=clock,
    )
    orchestrator = ZabbixPollOrchestrator(
        settings=settings,
        session_factory=session_factory,
        client=client,
        cipher=cipher,
        matcher=matcher,
        dispatcher=dispatcher,
        breaker=breaker,
        clock=clock,
    )
    scheduler = PollScheduler(orchestrator, CronScheduler(clock=clock))

    return ZabbixIntegration(
        settings=settings,
        session_factory=session_factory,
        clock=clock,
        cipher=cipher,
        client=client,
        breaker=breaker,
        matcher=matcher,
        dispatcher=dispatcher,
        orchestrator=orchestrator,
        scheduler=scheduler,
    )
