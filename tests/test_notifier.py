from datetime import datetime, timezone
from decimal import Decimal

import aiohttp
import pytest

from papertrade import notifier as notifier_module
from papertrade.config import NotifierConfig
from papertrade.notifier import LoggingNotifier, TelegramNotifier, TriggerEvent


class FakeResponse:
    def __init__(self, status):
        self.status = status

    async def text(self):
        return "bad request"

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    posts = []
    status = 200
    error = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def post(self, url, json=None, timeout=None):
        if FakeSession.error is not None:
            raise FakeSession.error
        FakeSession.posts.append((url, json))
        return FakeResponse(FakeSession.status)


@pytest.fixture
def fake_session(monkeypatch):
    FakeSession.posts = []
    FakeSession.status = 200
    FakeSession.error = None
    monkeypatch.setattr(notifier_module.aiohttp, "ClientSession", FakeSession)
    return FakeSession


def _event(**kwargs):
    defaults = dict(type="STOP_LOSS", symbol="bitcoin", trigger_price=Decimal("27500"),
                    quantity=Decimal("0.5"), pnl=Decimal("-1263.75"),
                    timestamp=datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc))
    defaults.update(kwargs)
    return TriggerEvent(**defaults)


def test_describe():
    assert _event().describe() == "STOP_LOSS bitcoin @ 27500 | qty 0.5 | P&L -1263.75"


def test_format_message():
    text = TelegramNotifier("token", "chat").format_message(_event(type="BUY_LIMIT", pnl=None, order_id="abc"))

    assert "*Buy Limit* triggered" in text
    assert "Symbol: `BITCOIN`" in text
    assert "Order: `abc`" in text
    assert "P&L" not in text
    assert "2024-01-02 03:04:05 UTC" in text


def test_from_config_disabled_without_credentials():
    assert TelegramNotifier.from_config(NotifierConfig()) is None
    enabled = TelegramNotifier.from_config(NotifierConfig(telegram_bot_token="t", telegram_chat_id="c"))
    assert enabled.chat_id == "c"


@pytest.mark.asyncio
async def test_logging_notifier_does_not_raise():
    await LoggingNotifier().notify(_event())


@pytest.mark.asyncio
async def test_telegram_posts_markdown(fake_session):
    notifier = TelegramNotifier("token", "chat")

    await notifier.notify(_event())

    url, payload = fake_session.posts[0]
    assert url == "https://api.telegram.org/bottoken/sendMessage"
    assert payload["chat_id"] == "chat"
    assert payload["parse_mode"] == "Markdown"
    assert notifier.sent == 1


@pytest.mark.asyncio
async def test_telegram_http_error_is_swallowed(fake_session):
    fake_session.status = 400
    notifier = TelegramNotifier("token", "chat")

    assert await notifier.send_message("hi") is False
    assert notifier.failed == 1


@pytest.mark.asyncio
async def test_telegram_network_error_is_swallowed(fake_session):
    fake_session.error = aiohttp.ClientConnectionError("unreachable")
    notifier = TelegramNotifier("token", "chat")

    await notifier.notify(_event())

    assert notifier.failed == 1
    assert notifier.sent == 0
