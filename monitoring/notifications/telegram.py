"""
Telegram Messaging.

============================================================
PURPOSE
============================================================
Send alert text to Telegram chats.

- TelegramFormatter: renders an alert in three dialects
  (Markdown, HTML, plain)
- TelegramClient: Bot API sendMessage over aiohttp
- deliver(): ordered fallback ladder across the dialects,
  returning a typed DeliveryResult

PRINCIPLES:
- Notification-only, NO control commands
- Clear, actionable messages
- Formatting problems degrade the message, never drop it

============================================================
FALLBACK LADDER
============================================================
1. Markdown
2. HTML, only when Markdown failed with a parse-class error
3. Plain text with markup characters stripped, after any HTML
   failure

Only exhausting the ladder counts as a failed delivery.

============================================================
"""

import asyncio
import html
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

import aiohttp

from monitoring.models import Severity


logger = logging.getLogger(__name__)


MAX_FIELD_LENGTH = 1000
MAX_MESSAGE_LENGTH = 4096

# Lowercased fragments of Bot API descriptions for entity parse failures
MARKUP_ERROR_MARKERS = (
    "can't parse entities",
    "can't find end of the entity",
    "unsupported start tag",
    "can't parse message text",
)

PLAIN_STRIP_PATTERN = re.compile(r"[*_`]")


# ============================================================
# ERRORS
# ============================================================

class TelegramError(Exception):
    """Transport-level failure talking to the Bot API."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.original_error = original_error


class TelegramAPIError(TelegramError):
    """Bot API answered with ok=false."""

    def __init__(self, description: str, error_code: Optional[int] = None):
        super().__init__(f"Telegram API error {error_code}: {description}")
        self.description = description
        self.error_code = error_code

    @property
    def is_markup_error(self) -> bool:
        text = (self.description or "").lower()
        return any(marker in text for marker in MARKUP_ERROR_MARKERS)


# ============================================================
# FORMATTING
# ============================================================

class DeliveryTier(str, Enum):
    """Formatting dialect a message was delivered with."""

    MARKDOWN = "markdown"
    HTML = "html"
    PLAIN = "plain"


@dataclass
class AlertMessage:
    """Dialect-neutral content of an alert notification."""

    emoji: str
    title: str
    fields: List[Tuple[str, str, str]]
    """(icon, label, value) rows."""

    message: Optional[str] = None
    description: Optional[str] = None


def _truncate(value: str, limit: int = MAX_FIELD_LENGTH) -> str:
    if len(value) <= limit:
        return value
    return value[: limit - 3] + "..."


def escape_markdown(text: str) -> str:
    """Escape legacy Markdown control characters."""
    return re.sub(r"([_*`\[])", r"\\\1", text)


def strip_markup(text: str) -> str:
    return PLAIN_STRIP_PATTERN.sub("", text)


class TelegramFormatter:
    """
    Formats alerts for Telegram.

    Event times are localized to a fixed display timezone.
    """

    TIME_FORMAT = "%d.%m.%Y %H:%M:%S"

    def __init__(self, timezone_name: str = "Europe/Kiev"):
        self._tz = ZoneInfo(timezone_name)

    def format_time(self, moment: Optional[datetime]) -> str:
        moment = moment or datetime.now(timezone.utc)
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        return moment.astimezone(self._tz).strftime(self.TIME_FORMAT)

    def build_message(self, alert: Any, title_prefix: str = "Zabbix Alert") -> AlertMessage:
        """Collect the content of an alert notification."""
        severity = Severity.coerce(alert.severity)
        status = getattr(alert.status, "value", alert.status) or "PROBLEM"

        return AlertMessage(
            emoji=severity.emoji,
            title=f"{title_prefix}: {severity.label}",
            fields=[
                ("🏷️", "Host", alert.host or "Unknown"),
                ("⚙️", "Trigger", _truncate(alert.trigger_name or "Unknown Trigger")),
                ("📊", "Status", str(status)),
                ("⏰", "Time", self.format_time(alert.event_time)),
            ],
            message=_truncate(alert.message) if alert.message else None,
            description=(
                _truncate(alert.trigger_description) if alert.trigger_description else None
            ),
        )

    @staticmethod
    def render_markdown(content: AlertMessage) -> str:
        lines = [f"{content.emoji} *{escape_markdown(content.title)}*", ""]
        for icon, label, value in content.fields:
            lines.append(f"{icon} *{label}:* {escape_markdown(value)}")
        if content.message:
            lines.extend(["", f"📝 *Message:* {escape_markdown(content.message)}"])
        if content.description:
            lines.extend(["", f"📄 *Description:* {escape_markdown(content.description)}"])
        return "\n".join(lines)

    @staticmethod
    def render_html(content: AlertMessage) -> str:
        lines = [f"{content.emoji} <b>{html.escape(content.title)}</b>", ""]
        for icon, label, value in content.fields:
            lines.append(f"{icon} <b>{label}:</b> {html.escape(value)}")
        if content.message:
            lines.extend(["", f"📝 <b>Message:</b> {html.escape(content.message)}"])
        if content.description:
            lines.extend(["", f"📄 <b>Description:</b> {html.escape(content.description)}"])
        return "\n".join(lines)

    @staticmethod
    def render_plain(content: AlertMessage) -> str:
        lines = [f"{content.emoji} {content.title}", ""]
        for icon, label, value in content.fields:
            lines.append(f"{icon} {label}: {value}")
        if content.message:
            lines.extend(["", f"📝 Message: {content.message}"])
        if content.description:
            lines.extend(["", f"📄 Description: {content.description}"])
        return strip_markup("\n".join(lines))

    def render_all(self, alert: Any, title_prefix: str = "Zabbix Alert") -> Dict[DeliveryTier, str]:
        """All three dialects of one alert, keyed by tier."""
        content = self.build_message(alert, title_prefix)
        return {
            DeliveryTier.MARKDOWN: self.render_markdown(content),
            DeliveryTier.HTML: self.render_html(content),
            DeliveryTier.PLAIN: self.render_plain(content),
        }

    def format_alert(self, alert: Any) -> str:
        """Markdown rendering of an alert."""
        return self.render_markdown(self.build_message(alert))


# ============================================================
# TELEGRAM CLIENT
# ============================================================

class TelegramClient:
    """
    Minimal Bot API client: sendMessage and getMe.

    One instance per bot token. The process-wide default is
    long-lived; group-specific clients are short-lived.
    """

    BASE_URL = "https://api.telegram.org/bot"

    def __init__(self, bot_token: Optional[str], timeout_seconds: float = 30.0):
        self._bot_token = (bot_token or "").strip()
        self._timeout_seconds = timeout_seconds
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def is_configured(self) -> bool:
        return bool(self._bot_token)

    async def __aenter__(self) -> "TelegramClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout_seconds)
            )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _call(self, api_method: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.is_configured:
            raise TelegramError("Telegram bot token is not configured")

        url = f"{self.BASE_URL}{self._bot_token}/{api_method}"
        session = await self._get_session()
        try:
            async with session.post(url, json=payload) as response:
                body = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TelegramError(f"Telegram request failed: {type(e).__name__}", e) from e
        except ValueError as e:
            raise TelegramError("Invalid JSON from Telegram", e) from e

        if not body.get("ok"):
            raise TelegramAPIError(
                body.get("description", "Unknown error"),
                body.get("error_code"),
            )
        return body.get("result") or {}

    async def send_message(
        self,
        chat_id: str,
        text: str,
        parse_mode: Optional[str] = None,
    ) -> Optional[int]:
        """
        Send text to a chat.

        Returns:
            Telegram message_id

        Raises:
            TelegramAPIError: Bot API rejected the message
            TelegramError: Transport failure
        """
        payload: Dict[str, Any] = {
            "chat_id": str(chat_id),
            "text": text[:MAX_MESSAGE_LENGTH],
            "disable_web_page_preview": True,
        }
        if parse_mode:
            payload["parse_mode"] = parse_mode

        result = await self._call("sendMessage", payload)
        return result.get("message_id")

    async def get_me(self) -> Dict[str, Any]:
        return await self._call("getMe", {})


# ============================================================
# FALLBACK LADDER
# ============================================================

@dataclass(frozen=True)
class FormatStrategy:
    tier: DeliveryTier
    parse_mode: Optional[str]


FORMAT_LADDER: Tuple[FormatStrategy, ...] = (
    FormatStrategy(DeliveryTier.MARKDOWN, "Markdown"),
    FormatStrategy(DeliveryTier.HTML, "HTML"),
    FormatStrategy(DeliveryTier.PLAIN, None),
)


@dataclass
class DeliveryResult:
    """Outcome of delivering one message to one chat."""

    chat_id: str
    success: bool
    tier: Optional[DeliveryTier] = None
    message_id: Optional[int] = None
    errors: List[str] = field(default_factory=list)

    @property
    def used_fallback(self) -> bool:
        return self.success and self.tier != DeliveryTier.MARKDOWN


async def deliver(
    client: TelegramClient,
    chat_id: str,
    renderings: Dict[DeliveryTier, str],
) -> DeliveryResult:
    """
    Walk the format ladder until one dialect is accepted.

    Args:
        client: Bot to send with
        chat_id: Destination chat
        renderings: Text per tier (see TelegramFormatter.render_all)
    """
    result = DeliveryResult(chat_id=str(chat_id), success=False)

    for strategy in FORMAT_LADDER:
        try:
            result.message_id = await client.send_message(
                chat_id,
                renderings[strategy.tier],
                parse_mode=strategy.parse_mode,
            )
        except TelegramAPIError as e:
            result.errors.append(f"{strategy.tier.value}: {e.description}")
            logger.warning(f"Telegram {strategy.tier.value} send to {chat_id} failed: {e.description}")
            if strategy.tier == DeliveryTier.MARKDOWN and not e.is_markup_error:
                # Not a formatting problem; other dialects fail the same way
                break
            continue
        except TelegramError as e:
            result.errors.append(f"{strategy.tier.value}: {e}")
            logger.error(f"Telegram send to {chat_id} failed: {e}")
            break

        result.success = True
        result.tier = strategy.tier
        if result.used_fallback:
            logger.info(f"Delivered to {chat_id} using {strategy.tier.value} fallback")
        return result

    return result
