"""
Pytest configuration and fixtures for bot tests.
"""
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

from aiogram import Bot
from aiogram.types import User, Chat

from vpnbot.config import ApiConfig, Config, TelegramConfig, TrialConfig
from vpnbot.utils.api_client import BackendSession
from vpnbot.utils.models import User as ApiUser

CHAT_ID = 123456789
API_USER_ID = 7


class FakeClock:
    """Controllable clock for TTL checks."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def mock_bot():
    """Mock Telegram Bot."""
    bot = AsyncMock(spec=Bot)
    bot.send_message = AsyncMock()
    bot.send_photo = AsyncMock()
    bot.send_document = AsyncMock()
    return bot


@pytest.fixture
def mock_user():
    """Mock Telegram User."""
    return User(
        id=CHAT_ID,
        is_bot=False,
        first_name="Test",
        last_name="User",
        username="testuser",
        language_code="ru",
    )


@pytest.fixture
def mock_chat():
    """Mock Telegram Chat."""
    return Chat(id=CHAT_ID, type="private")


@pytest.fixture
def api_user():
    """Billing account bound to CHAT_ID."""
    return ApiUser.model_validate({
        "user_id": API_USER_ID,
        "login": f"@{CHAT_ID}",
        "balance": 100.0,
        "settings": {"telegram": {"chat_id": CHAT_ID, "username": "testuser"}},
    })


@pytest.fixture
def mock_session(api_user):
    """BackendSession with every call mocked; account exists by default."""
    session = AsyncMock(spec=BackendSession)
    session.find_accounts.return_value = [api_user]
    session.has_trial_withdrawal.return_value = False
    session.get_catalog_item.return_value = None
    session.list_user_services.return_value = []
    session.list_catalog.return_value = []
    return session


@pytest.fixture
def trial_config():
    return TrialConfig(
        enabled=True,
        service_id=42,
        require_start_param=True,
        allowed_start_params=("promo1",),
        eligibility_ttl_hours=24,
    )


def make_config(trial: TrialConfig = None) -> Config:
    return Config(
        api=ApiConfig(base_url="https://billing.example.com", login="admin", password="secret"),
        telegram=TelegramConfig(
            token="123:ABC",
            support_chat_url="https://t.me/support",
            logo_url="https://example.com/logo.jpg",
        ),
        trial=trial or TrialConfig(),
    )


@pytest.fixture
def bot_config():
    return make_config()


def make_callback(data: str, user: User, chat_id: int = CHAT_ID) -> MagicMock:
    """CallbackQuery stand-in with awaitable answer() and message.delete()."""
    callback = MagicMock()
    callback.data = data
    callback.from_user = user
    callback.message = MagicMock()
    callback.message.chat.id = chat_id
    callback.message.delete = AsyncMock()
    callback.answer = AsyncMock()
    return callback


def make_message(user: User, chat_id: int = CHAT_ID, text: str = "/start") -> MagicMock:
    message = MagicMock()
    message.chat.id = chat_id
    message.from_user = user
    message.text = text
    return message


def buttons(markup) -> list:
    """Flat list of callback_data/url values of an inline keyboard."""
    out = []
    for row in markup.inline_keyboard:
        for btn in row:
            out.append(btn.callback_data or btn.url or (btn.web_app.url if btn.web_app else None))
    return out
