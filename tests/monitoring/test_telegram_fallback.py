"""
Tests for Telegram formatting and the delivery fallback ladder.

============================================================
PURPOSE
============================================================
- Messages render in Markdown, HTML and plain text
- Times are shown in the display timezone
- A parse-class Markdown failure falls through to HTML, then
  to plain text; other failures stop the ladder

============================================================
"""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from monitoring.notifications.telegram import (
    DeliveryTier,
    TelegramAPIError,
    TelegramClient,
    TelegramError,
    TelegramFormatter,
    deliver,
    escape_markdown,
    strip_markup,
)


MARKDOWN_PARSE_ERROR = TelegramAPIError(
    "Bad Request: can't parse entities: Can't find end of the entity starting at byte offset 12",
    400,
)


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def formatter():
    return TelegramFormatter("Europe/Kiev")


@pytest.fixture
def alert(make_record):
    return make_record(
        host="db_prod*01",
        trigger_name="Free disk < 5% on /var",
        message="Disk <almost> full",
        event_time=datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc),
        trigger_description="Check `df -h`",
    )


@pytest.fixture
def renderings(formatter, alert):
    return formatter.render_all(alert)


# ============================================================
# FORMATTING
# ============================================================

class TestTelegramFormatter:

    def test_time_in_display_zone(self, formatter):
        # UTC+2 in winter
        assert formatter.format_time(datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)) == (
            "15.01.2024 12:30:00"
        )

    def test_naive_time_treated_as_utc(self, formatter):
        assert formatter.format_time(datetime(2024, 7, 1, 0, 0)) == "01.07.2024 03:00:00"

    def test_build_message(self, formatter, alert):
        content = formatter.build_message(alert)

        assert content.emoji == "🚨"
        assert content.title == "Zabbix Alert: Disaster"
        labels = [label for _, label, _ in content.fields]
        assert labels == ["Host", "Trigger", "Status", "Time"]
        assert ("📊", "Status", "PROBLEM") in content.fields

    def test_markdown_escapes_values(self, renderings):
        markdown = renderings[DeliveryTier.MARKDOWN]
        assert "*Host:* db\\_prod\\*01" in markdown
        assert "Check \\`df -h\\`" in markdown

    def test_html_escapes_values(self, renderings):
        html_text = renderings[DeliveryTier.HTML]
        assert "<b>Host:</b> db_prod*01" in html_text
        assert "Disk &lt;almost&gt; full" in html_text
        assert "Free disk &lt; 5% on /var" in html_text

    def test_plain_has_no_markup(self, renderings):
        plain = renderings[DeliveryTier.PLAIN]
        assert "*" not in plain and "_" not in plain and "`" not in plain
        assert "Host: dbprod01" in plain

    def test_title_prefix(self, formatter, alert):
        assert formatter.build_message(alert, "Test Alert").title == "Test Alert: Disaster"

    def test_long_fields_truncated(self, formatter, make_record):
        content = formatter.build_message(make_record(message="x" * 5000))
        assert len(content.message) == 1000
        assert content.message.endswith("...")

    def test_escape_helpers(self):
        assert escape_markdown("a_b*c`d[e") == "a\\_b\\*c\\`d\\[e"
        assert strip_markup("*bold* _it_ `code`") == "bold it code"


# ============================================================
# FALLBACK LADDER
# ============================================================

class TestDeliver:
    """Markdown -> HTML -> plain."""

    @pytest.mark.asyncio
    async def test_markdown_success(self, telegram, renderings):
        result = await deliver(telegram, "-100", renderings)

        assert result.success
        assert result.tier == DeliveryTier.MARKDOWN
        assert not result.used_fallback
        assert telegram.attempts == [("-100", renderings[DeliveryTier.MARKDOWN], "Markdown")]

    @pytest.mark.asyncio
    async def test_parse_error_falls_back_to_html(self, telegram, renderings):
        telegram.failures = [MARKDOWN_PARSE_ERROR]

        result = await deliver(telegram, "-100", renderings)

        assert result.success
        assert result.tier == DeliveryTier.HTML
        assert result.used_fallback
        assert [mode for _, _, mode in telegram.attempts] == ["Markdown", "HTML"]

    @pytest.mark.asyncio
    async def test_markdown_then_html_failure_sends_plain(self, telegram, renderings):
        telegram.failures = [
            MARKDOWN_PARSE_ERROR,
            TelegramAPIError("Bad Request: unsupported start tag \"almost\"", 400),
        ]

        result = await deliver(telegram, "-100", renderings)

        assert result.success
        assert result.tier == DeliveryTier.PLAIN
        assert len(result.errors) == 2
        assert telegram.sent == [("-100", renderings[DeliveryTier.PLAIN], None)]

    @pytest.mark.asyncio
    async def test_non_parse_markdown_error_stops(self, telegram, renderings):
        telegram.failures = [TelegramAPIError("Forbidden: bot was blocked by the user", 403)]

        result = await deliver(telegram, "-100", renderings)

        assert not result.success
        assert result.tier is None
        assert len(telegram.attempts) == 1

    @pytest.mark.asyncio
    async def test_transport_error_stops(self, telegram, renderings):
        telegram.failures = [TelegramError("Telegram request failed: ClientConnectorError")]

        result = await deliver(telegram, "-100", renderings)

        assert not result.success
        assert len(telegram.attempts) == 1

    @pytest.mark.asyncio
    async def test_all_tiers_fail(self, telegram, renderings):
        telegram.failures = [
            MARKDOWN_PARSE_ERROR,
            TelegramAPIError("Bad Request: can't parse entities", 400),
            TelegramAPIError("Bad Request: message is too long", 400),
        ]

        result = await deliver(telegram, "-100", renderings)

        assert not result.success
        assert len(result.errors) == 3


# ============================================================
# CLIENT
# ============================================================

class TestTelegramClient:

    def test_is_configured(self):
        assert TelegramClient("123:abc").is_configured
        assert not TelegramClient("  ").is_configured
        assert not TelegramClient(None).is_configured

    def test_markup_error_detection(self):
        assert MARKDOWN_PARSE_ERROR.is_markup_error
        assert not TelegramAPIError("Forbidden: bot was kicked", 403).is_markup_error

    @pytest.mark.asyncio
    async def test_send_message_payload(self):
        client = TelegramClient("123:abc")
        client._call = AsyncMock(return_value={"message_id": 42})

        message_id = await client.send_message(-100, "x" * 5000, parse_mode="HTML")

        assert message_id == 42
        method, payload = client._call.await_args.args
        assert method == "sendMessage"
        assert payload["chat_id"] == "-100"
        assert len(payload["text"]) == 4096
        assert payload["parse_mode"] == "HTML"
        assert payload["disable_web_page_preview"] is True

    @pytest.mark.asyncio
    async def test_unconfigured_client_raises(self):
        with pytest.raises(TelegramError):
            await TelegramClient(None).send_message("1", "hi")

    @pytest.mark.asyncio
    async def test_request_timeout_is_transport_error(self, renderings):
        client = TelegramClient("123:abc")
        session = MagicMock(closed=False)
        session.post.side_effect = asyncio.TimeoutError()
        client._get_session = AsyncMock(return_value=session)

        with pytest.raises(TelegramError, match="TimeoutError"):
            await client.send_message("-100", "hi")

        result = await deliver(client, "-100", renderings)
        assert not result.success
        assert len(result.errors) == 1
