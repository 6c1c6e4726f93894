"""
Notification Dispatcher.

============================================================
PURPOSE
============================================================
Delivers one alert to every eligible notification group.

Per group:
- Shared chat configured: send there with the group's own bot
  token if it has one, else the default bot
- Otherwise: send to each member's personal Telegram chat with
  the default bot

After all groups:
- sent > 0: mark the alert notification_sent with the ids of
  the groups that received it
- sent == 0: the alert stays unsent

Delivery failures are counted and logged, never raised.

============================================================
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

from core.clock import ClockProtocol, SystemClock
from monitoring.alerts.rules import can_send_notification
from monitoring.models import DispatchResult
from monitoring.notifications.telegram import (
    DeliveryResult,
    DeliveryTier,
    TelegramClient,
    TelegramFormatter,
    deliver,
)


logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """
    Fans an alert out to notification groups.

    Holds the process-wide default bot; group bots are created per
    send through client_factory and closed afterwards.
    """

    def __init__(
        self,
        default_client: Optional[TelegramClient],
        formatter: TelegramFormatter,
        cipher: Any,
        clock: Optional[ClockProtocol] = None,
        client_factory: Callable[[str], TelegramClient] = TelegramClient,
    ):
        self._default_client = default_client
        self._formatter = formatter
        self._cipher = cipher
        self._clock = clock or SystemClock()
        self._client_factory = client_factory

    @property
    def messaging_available(self) -> bool:
        return self._default_client is not None and self._default_client.is_configured

    @property
    def formatter(self) -> TelegramFormatter:
        return self._formatter

    async def close(self) -> None:
        if self._default_client is not None:
            await self._default_client.close()

    # --------------------------------------------------------
    # DISPATCH
    # --------------------------------------------------------

    async def notify(
        self,
        alert: Any,
        groups: Sequence[Any],
        repos: Any,
        title_prefix: str = "Zabbix Alert",
        test: bool = False,
    ) -> DispatchResult:
        """
        Send the alert to each group.

        Args:
            alert: ZabbixAlert (or any object with alert fields)
            groups: Eligible groups from the rule matcher
            repos: MonitoringRepositories bound to the cycle's session
            title_prefix: Message heading
            test: Test send; ignores rate limits and persists nothing

        Returns:
            DispatchResult with per-delivery counts
        """
        result = DispatchResult()
        if not groups:
            return result

        if not any(g.has_chat_destination for g in groups) and not self.messaging_available:
            result.errors.append(
                "No messaging destination: no group has a chat configured "
                "and the default Telegram bot is not configured"
            )
            logger.warning(f"Alert {alert.alert_id}: {result.errors[-1]}")
            return result

        renderings = self._formatter.render_all(alert, title_prefix)
        now = self._clock.now()

        for group in groups:
            # Matching may have happened a while ago for long cycles
            if not test and not can_send_notification(group, now):
                logger.info(f"Skipping group '{group.name}': rate limited")
                continue

            if group.has_chat_destination:
                deliveries = await self._send_to_group_chat(group, renderings, result)
            else:
                deliveries = await self._send_to_members(group, renderings, repos, result)

            group_sent = self._tally(group, deliveries, result)
            if group_sent > 0:
                result.notified_group_ids.append(str(group.group_id))
                if not test:
                    repos.groups.record_notification(group, now)

        result.total = result.sent + result.failed

        if result.sent > 0 and not test:
            repos.alerts.mark_notification_sent(alert, result.notified_group_ids, now)

        logger.info(
            f"Alert {alert.alert_id}: sent={result.sent} failed={result.failed} "
            f"groups={len(result.notified_group_ids)}"
        )
        return result

    async def _send_to_group_chat(
        self,
        group: Any,
        renderings: Dict[DeliveryTier, str],
        result: DispatchResult,
    ) -> List[DeliveryResult]:
        bot_token = group.decrypt_bot_token(self._cipher)
        if bot_token:
            client = self._client_factory(bot_token)
            try:
                return [await deliver(client, group.telegram_chat_id, renderings)]
            finally:
                await client.close()

        if not self.messaging_available:
            result.failed += 1
            result.errors.append(f"Group '{group.name}': no bot token available")
            return []

        return [await deliver(self._default_client, group.telegram_chat_id, renderings)]

    async def _send_to_members(
        self,
        group: Any,
        renderings: Dict[DeliveryTier, str],
        repos: Any,
        result: DispatchResult,
    ) -> List[DeliveryResult]:
        if not self.messaging_available:
            result.failed += 1
            result.errors.append(
                f"Group '{group.name}': default Telegram bot is not configured"
            )
            return []

        recipients = repos.subscribers.list_reachable(group.member_ids)
        if not recipients:
            result.failed += 1
            result.errors.append(f"Group '{group.name}': no reachable recipients")
            logger.warning(f"Group '{group.name}' has no reachable recipients")
            return []

        deliveries = []
        for subscriber in recipients:
            deliveries.append(
                await deliver(self._default_client, subscriber.telegram_id, renderings)
            )
        return deliveries

    @staticmethod
    def _tally(group: Any, deliveries: List[DeliveryResult], result: DispatchResult) -> int:
        sent = 0
        for delivery in deliveries:
            if delivery.success:
                sent += 1
                result.sent += 1
                result.tiers_used.append(delivery.tier.value)
            else:
                result.failed += 1
                detail = "; ".join(delivery.errors) or "unknown error"
                result.errors.append(f"Group '{group.name}' chat {delivery.chat_id}: {detail}")
        return sent
