"""
End-to-end conversation scenarios: router + account service + trial gate
over a mocked billing session.
"""
import pytest
from unittest.mock import MagicMock

from aiogram.exceptions import TelegramForbiddenError
from aiogram.filters import CommandObject

from vpnbot.handlers.menu_handler import (
    APOLOGIES,
    DELETE_CONFIRM_TEXT,
    LIST_TEXT,
    MALFORMED_COMMAND_TEXT,
    MAIN_MENU_TEXT,
    REGISTRATION_TEXT,
    TRIAL_CLAIMED_TEXT,
    TRIAL_NEEDS_LINK_TEXT,
    UNKNOWN_COMMAND_TEXT,
    ConversationRouter,
)
from vpnbot.utils.account_service import AccountService
from vpnbot.utils.commands import DeleteConfirmed
from vpnbot.utils.errors import BackendError, TransportError
from vpnbot.utils.models import Service, UserBalance, UserService
from vpnbot.utils.trial_gate import TrialEligibilityGate

from conftest import API_USER_ID, CHAT_ID, buttons, make_callback, make_config, make_message

TRIAL_SERVICE = Service(service_id=42, name="🎁 Тест 3 дня", cost=0, period=0.1)


def _router(session, trial_config=None, clock=None):
    config = make_config(trial_config)
    accounts = AccountService(session)
    kwargs = {"clock": clock} if clock is not None else {}
    gate = TrialEligibilityGate(config.trial, accounts, **kwargs)
    return ConversationRouter(accounts, gate, config, settle_delay=0)


def _start(param=None):
    return CommandObject(prefix="/", command="start", args=param)


def _last_photo_markup(bot):
    return bot.send_photo.await_args.kwargs["reply_markup"]


@pytest.mark.asyncio
async def test_start_with_trial_disabled_shows_plain_menu(mock_session, mock_bot, mock_user):
    """Test that a registered user gets the main menu without a trial button."""
    router = _router(mock_session)

    await router.on_start(make_message(mock_user), mock_bot, command=_start("promo1"))

    kwargs = mock_bot.send_photo.await_args.kwargs
    assert kwargs["chat_id"] == CHAT_ID
    assert kwargs["caption"] == MAIN_MENU_TEXT
    assert "trial" not in buttons(kwargs["reply_markup"])

    await router.on_callback(make_callback("pricelist", mock_user), mock_bot)
    assert "trial" not in buttons(_last_photo_markup(mock_bot))
    mock_session.has_trial_withdrawal.assert_not_called()


@pytest.mark.asyncio
async def test_promo_link_eligibility_expires(mock_session, mock_bot, mock_user, trial_config, clock):
    """Test /start promo1 grants the trial for 24h: offered at t0+1h, gone at t0+25h."""
    mock_session.get_catalog_item.return_value = TRIAL_SERVICE
    router = _router(mock_session, trial_config, clock)

    await router.on_start(make_message(mock_user), mock_bot, command=_start("promo1"))
    assert "trial" in buttons(_last_photo_markup(mock_bot))

    clock.advance(hours=1)
    await router.on_callback(make_callback("pricelist", mock_user), mock_bot)
    assert "trial" in buttons(_last_photo_markup(mock_bot))

    clock.advance(hours=24)
    await router.on_callback(make_callback("pricelist", mock_user), mock_bot)
    assert "trial" not in buttons(_last_photo_markup(mock_bot))

    await router.on_callback(make_callback("trial", mock_user), mock_bot)
    assert mock_bot.send_message.await_args.kwargs["text"] == TRIAL_NEEDS_LINK_TEXT
    mock_session.place_order.assert_not_called()


@pytest.mark.asyncio
async def test_start_grants_before_registration(mock_session, mock_bot, mock_user, trial_config, clock):
    """Test that the promo grant survives onboarding of an unregistered chat."""
    mock_session.find_accounts.return_value = []
    mock_session.get_catalog_item.return_value = TRIAL_SERVICE
    router = _router(mock_session, trial_config, clock)

    await router.on_start(make_message(mock_user), mock_bot, command=_start("promo1"))

    assert mock_bot.send_message.await_args.kwargs["text"] == REGISTRATION_TEXT
    assert router._gate.is_eligible(CHAT_ID) is True


@pytest.mark.asyncio
async def test_unregistered_user_gets_registration_screen(mock_session, mock_bot, mock_user):
    """Test that any account-scoped button leads an unknown chat to registration."""
    mock_session.find_accounts.return_value = []
    router = _router(mock_session)
    callback = make_callback("balance", mock_user)

    await router.on_callback(callback, mock_bot)

    kwargs = mock_bot.send_message.await_args.kwargs
    assert kwargs["text"] == REGISTRATION_TEXT
    assert buttons(kwargs["reply_markup"]) == ["register"]
    mock_session.get_balance.assert_not_called()
    callback.answer.assert_awaited()


@pytest.mark.asyncio
async def test_register_creates_account_and_shows_menu(mock_session, mock_bot, mock_user, api_user):
    """Test the registration button path."""
    mock_session.find_accounts.side_effect = [[], [api_user]]
    router = _router(mock_session)

    await router.on_callback(make_callback("register", mock_user), mock_bot)

    mock_session.register_account.assert_awaited_once()
    assert mock_bot.send_photo.await_args.kwargs["caption"] == MAIN_MENU_TEXT


@pytest.mark.asyncio
async def test_delete_confirmed_unknown_id_fails_gracefully(mock_session, mock_bot, mock_user):
    """Test that deleting a non-existent instance answers with an apology, not a crash."""
    mock_session.delete_user_service.side_effect = BackendError("DELETE failed", status=404, body="not found")
    router = _router(mock_session)
    callback = make_callback("delete_confirmed|999", mock_user)

    await router.on_callback(callback, mock_bot)

    mock_session.delete_user_service.assert_awaited_once_with(API_USER_ID, 999)
    assert mock_bot.send_message.await_args.kwargs["text"] == APOLOGIES[DeleteConfirmed]
    mock_bot.send_photo.assert_not_called()
    callback.answer.assert_awaited()


@pytest.mark.asyncio
async def test_delete_asks_for_confirmation_first(mock_session, mock_bot, mock_user):
    """Test that the first delete step only renders the confirmation."""
    router = _router(mock_session)

    await router.on_callback(make_callback("delete|15", mock_user), mock_bot)

    kwargs = mock_bot.send_message.await_args.kwargs
    assert kwargs["text"] == DELETE_CONFIRM_TEXT
    assert "delete_confirmed|15" in buttons(kwargs["reply_markup"])
    mock_session.delete_user_service.assert_not_called()


@pytest.mark.asyncio
async def test_delete_confirmed_rerenders_list(mock_session, mock_bot, mock_user):
    """Test that a confirmed delete removes the prompt and shows the list."""
    router = _router(mock_session)
    callback = make_callback("delete_confirmed|15", mock_user)

    await router.on_callback(callback, mock_bot)

    callback.message.delete.assert_awaited_once()
    assert mock_bot.send_photo.await_args.kwargs["caption"] == LIST_TEXT


@pytest.mark.asyncio
async def test_list_is_idempotent(mock_session, mock_bot, mock_user):
    """Test that pressing 'list' twice renders the same screen twice."""
    mock_session.list_user_services.return_value = [
        UserService(user_service_id=15, service_id=1, user_id=API_USER_ID, name="VPN DE", status="ACTIVE"),
    ]
    router = _router(mock_session)

    await router.on_callback(make_callback("list", mock_user), mock_bot)
    await router.on_callback(make_callback("list", mock_user), mock_bot)

    first, second = mock_bot.send_photo.await_args_list
    assert first.kwargs == second.kwargs
    assert "service|15" in buttons(first.kwargs["reply_markup"])


@pytest.mark.asyncio
async def test_order_rerenders_list(mock_session, mock_bot, mock_user):
    """Test that ordering a catalog item places the order and shows the list."""
    router = _router(mock_session)

    await router.on_callback(make_callback("serviceorder|3", mock_user), mock_bot)

    mock_session.place_order.assert_awaited_once_with(API_USER_ID, 3)
    assert mock_bot.send_photo.await_args.kwargs["caption"] == LIST_TEXT


@pytest.mark.asyncio
async def test_trial_button_orders_when_available(mock_session, mock_bot, mock_user, trial_config, clock):
    """Test that the trial action orders the configured service once eligible."""
    mock_session.get_catalog_item.return_value = TRIAL_SERVICE
    router = _router(mock_session, trial_config, clock)
    router._gate.grant_from_start_param(CHAT_ID, "promo1")

    await router.on_callback(make_callback("trial", mock_user), mock_bot)

    mock_session.place_order.assert_awaited_once_with(API_USER_ID, 42)
    assert mock_bot.send_photo.await_args.kwargs["caption"] == LIST_TEXT


@pytest.mark.asyncio
async def test_trial_already_claimed(mock_session, mock_bot, mock_user, trial_config, clock):
    """Test that a claimed trial is refused without ordering."""
    mock_session.has_trial_withdrawal.return_value = True
    router = _router(mock_session, trial_config, clock)
    router._gate.grant_from_start_param(CHAT_ID, "promo1")

    await router.on_callback(make_callback("trial", mock_user), mock_bot)

    assert mock_bot.send_message.await_args.kwargs["text"] == TRIAL_CLAIMED_TEXT
    mock_session.place_order.assert_not_called()


@pytest.mark.asyncio
async def test_balance_screen_links_payment_webapp(mock_session, mock_bot, mock_user):
    """Test that the balance screen carries the payment web app for the billing user."""
    mock_session.get_balance.return_value = UserBalance(user_id=API_USER_ID, balance=50, forecast=100)
    router = _router(mock_session)

    await router.on_callback(make_callback("balance", mock_user), mock_bot)

    kwargs = mock_bot.send_photo.await_args.kwargs
    assert "50.00" in kwargs["caption"]
    urls = buttons(kwargs["reply_markup"])
    assert any(u and u.startswith("https://billing.example.com/shm/v1/public/tg_payments_webapp") for u in urls)
    assert any(u and f"user_id={API_USER_ID}" in u for u in urls)


@pytest.mark.asyncio
async def test_transport_error_apologizes(mock_session, mock_bot, mock_user):
    """Test that network failures are answered with a short apology."""
    mock_session.list_catalog.side_effect = TransportError("timed out")
    router = _router(mock_session)

    await router.on_callback(make_callback("pricelist", mock_user), mock_bot)

    text = mock_bot.send_message.await_args.kwargs["text"]
    assert text.startswith("⚠️")


@pytest.mark.asyncio
async def test_service_not_found(mock_session, mock_bot, mock_user):
    """Test that a missing instance is reported instead of rendering a card."""
    mock_session.get_user_service.return_value = None
    router = _router(mock_session)

    await router.on_callback(make_callback("service|77", mock_user), mock_bot)

    mock_session.get_user_service.assert_awaited_once_with(API_USER_ID, 77)
    assert "не найдена" in mock_bot.send_message.await_args.kwargs["text"]


@pytest.mark.asyncio
async def test_download_key_sends_document(mock_session, mock_bot, mock_user):
    """Test that the key file is sent as a document."""
    mock_session.download_user_key_file.return_value = b"[Interface]"
    router = _router(mock_session)

    await router.on_callback(make_callback("download_qr|15", mock_user), mock_bot)

    document = mock_bot.send_document.await_args.kwargs["document"]
    assert document.filename == "vpn15.conf"


@pytest.mark.asyncio
async def test_unknown_and_malformed_callbacks_are_acknowledged(mock_session, mock_bot, mock_user):
    """Test that bad payloads only get a callback answer."""
    router = _router(mock_session)
    unknown = make_callback("bogus", mock_user)
    malformed = make_callback("service|abc", mock_user)

    await router.on_callback(unknown, mock_bot)
    await router.on_callback(malformed, mock_bot)

    unknown.answer.assert_awaited_once_with(UNKNOWN_COMMAND_TEXT)
    malformed.answer.assert_awaited_once_with(MALFORMED_COMMAND_TEXT)
    mock_session.find_accounts.assert_not_called()
    mock_bot.send_message.assert_not_called()


@pytest.mark.asyncio
async def test_unicode_digit_id_is_answered_as_malformed(mock_session, mock_bot, mock_user):
    """Test that a superscript digit id is rejected before reaching the billing."""
    router = _router(mock_session)
    callback = make_callback("delete_confirmed|²", mock_user)

    await router.on_callback(callback, mock_bot)

    callback.answer.assert_awaited_once_with(MALFORMED_COMMAND_TEXT)
    mock_session.delete_user_service.assert_not_called()


@pytest.mark.asyncio
async def test_callback_answered_when_telegram_send_fails(mock_session, mock_bot, mock_user):
    """Test that the callback spinner is released even if sending the screen fails."""
    mock_bot.send_photo.side_effect = TelegramForbiddenError(method=MagicMock(), message="bot was blocked by the user")
    router = _router(mock_session)
    callback = make_callback("list", mock_user)

    with pytest.raises(TelegramForbiddenError):
        await router.on_callback(callback, mock_bot)

    callback.answer.assert_awaited_once()
