# vpnbot/handlers/menu_handler.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Type

from aiogram import Bot, Router
from aiogram.enums import ParseMode
from aiogram.exceptions import TelegramAPIError, TelegramBadRequest
from aiogram.filters import Command as CommandFilter, CommandObject, CommandStart
from aiogram.types import (
    BufferedInputFile,
    CallbackQuery,
    InlineKeyboardMarkup,
    Message,
    User as TgUser,
)

from vpnbot.config import Config
from vpnbot.keyboards import inline as kb
from vpnbot.utils.account_service import AccountService
from vpnbot.utils.commands import (
    AnyCommand,
    Balance,
    Command,
    Delete,
    DeleteConfirmed,
    DownloadKey,
    Help,
    ListServices,
    MalformedCommand,
    Menu,
    OrderService,
    Pays,
    Pricelist,
    Register,
    ShowMarzbanKeys,
    ShowQr,
    ShowService,
    Start,
    Trial,
    Unknown,
    decode_callback,
)
from vpnbot.utils.errors import AuthError, BackendError, UserNotFound
from vpnbot.utils.models import STATUS_ACTIVE, STATUS_BLOCK, STATUS_NOT_PAID
from vpnbot.utils.qr import make_qr_png
from vpnbot.utils.time_helpers import expire_str
from vpnbot.utils.trial_gate import (
    REASON_AVAILABLE,
    REASON_CLAIMED,
    REASON_NEEDS_START_PARAM,
    TrialEligibilityGate,
)

logger = logging.getLogger(__name__)

# =============================================================================
# Тексты
# =============================================================================
REGISTRATION_TEXT = "Для начала работы с Telegram ботом, пожалуйста, зарегистрируйтесь"
MAIN_MENU_TEXT = "Создавайте и управляйте своими ключами доступа"
LIST_TEXT = "🗝 Ваши ключи:"
PRICELIST_TEXT = "☷ Выберите услугу для заказа:"
PAYS_TEXT = "Платежи"
DELETE_CONFIRM_TEXT = "🤔 <b>Подтвердите удаление услуги. Услугу нельзя будет восстановить!</b>"
HELP_TEXT = (
    '1️⃣ В разделе <b>"Список ключей доступа"</b> закажите новый ключ, выбрав подходящий тариф.\n\n'
    '2️⃣ После оплаты (пункт меню <b>"Баланс" - "✚ Пополнить баланс"</b>) в том же разделе выберите '
    'созданный ключ и нажмите <b>"Показать данные для подключения"</b>.\n\n'
    "3️⃣ Следуйте инструкциям в открывшемся окне."
)

UNKNOWN_COMMAND_TEXT = "Неизвестная команда"
MALFORMED_COMMAND_TEXT = "Некорректная команда"
SERVICE_NOT_FOUND_TEXT = "⚠️ Услуга не найдена"
QR_CAPTION = "Ваш QR-код"
NO_SUBSCRIPTION_TEXT = "⚠️ Нет данных для подключения по этой услуге"

TRIAL_UNAVAILABLE_TEXT = "⚠️ Тестовая услуга временно недоступна"
TRIAL_NEEDS_LINK_TEXT = (
    "ℹ️ Тест доступен по специальной ссылке приглашения. "
    "Откройте бота по промо-ссылке и попробуйте снова."
)
TRIAL_CLAIMED_TEXT = "ℹ️ Тестовая услуга уже была заказана ранее"

DEFAULT_APOLOGY = "⚠️ Ошибка системы, попробуйте позже"
APOLOGIES: Dict[Type[Command], str] = {
    Register: "⚠️ Ошибка регистрации. Пожалуйста, попробуйте позже.",
    ListServices: "⚠️ Произошла ошибка при получении списка услуг",
    Pricelist: "⚠️ Не удалось загрузить список услуг. Попробуйте позже.",
    ShowService: "⚠️ Произошла ошибка при получении информации по услуге",
    OrderService: "⚠️ Произошла ошибка при заказе услуги",
    DownloadKey: "⚠️ Ошибка загрузки файла ключа",
    ShowQr: "⚠️ Не удалось создать QR-код",
    ShowMarzbanKeys: "⚠️ Произошла ошибка при получении информации по услуге",
    DeleteConfirmed: "⚠️ Ошибка при удалении услуги",
    Pays: "⚠️ Не удалось получить данные о платежах",
    Trial: "⚠️ Не удалось выдать тест. Попробуйте позже.",
}

SERVICE_STATUS_TITLES = {
    STATUS_ACTIVE: ("✅", "Работает"),
    STATUS_BLOCK: ("❌", "Заблокирована"),
    STATUS_NOT_PAID: ("💰", "Ожидает оплаты"),
}

# Пауза после удаления перед повторным запросом списка
DELETE_SETTLE_SEC = 2.0


@dataclass
class Turn:
    """Один входящий апдейт: чат, отправитель и то, чем отвечать."""
    bot: Bot
    chat_id: int
    sender: Optional[TgUser] = None
    callback: Optional[CallbackQuery] = None
    source_dropped: bool = False

    @classmethod
    def from_message(cls, message: Message, bot: Bot) -> "Turn":
        return cls(bot=bot, chat_id=message.chat.id, sender=message.from_user)

    @classmethod
    def from_callback(cls, callback: CallbackQuery, bot: Bot) -> "Turn":
        chat_id = callback.message.chat.id if callback.message else callback.from_user.id
        return cls(bot=bot, chat_id=chat_id, sender=callback.from_user, callback=callback)


Action = Callable[[AnyCommand, Turn], Awaitable[None]]


class ConversationRouter:
    def __init__(
        self,
        accounts: AccountService,
        gate: TrialEligibilityGate,
        config: Config,
        *,
        settle_delay: float = DELETE_SETTLE_SEC,
    ):
        self._accounts = accounts
        self._gate = gate
        self._config = config
        self._settle_delay = settle_delay
        self._actions: Dict[Type[Command], Action] = {
            Start: self._start,
            Register: self._register,
            Menu: self._menu,
            Balance: self._balance,
            ListServices: self._list,
            Pricelist: self._pricelist,
            Help: self._help,
            Pays: self._pays,
            ShowService: self._service,
            OrderService: self._order,
            DownloadKey: self._download_key,
            ShowQr: self._show_qr,
            ShowMarzbanKeys: self._show_marzban_keys,
            Delete: self._delete,
            DeleteConfirmed: self._delete_confirmed,
            Trial: self._trial,
        }

    # =========================================================================
    # aiogram
    # =========================================================================
    def router(self, rt: Router) -> None:
        rt.message.register(self.on_start, CommandStart())
        rt.message.register(self.on_register, CommandFilter("register"))
        rt.message.register(self.on_typed, CommandFilter("menu", "help", "balance", "list", "pricelist"))
        rt.callback_query.register(self.on_callback)

    async def on_start(self, message: Message, bot: Bot, command: Optional[CommandObject] = None) -> None:
        param = command.args if command is not None else None
        await self.dispatch(Start(param=param), Turn.from_message(message, bot))

    async def on_register(self, message: Message, bot: Bot) -> None:
        await self.dispatch(Register(), Turn.from_message(message, bot))

    async def on_typed(self, message: Message, bot: Bot, command: CommandObject) -> None:
        await self.dispatch(decode_callback(command.command), Turn.from_message(message, bot))

    async def on_callback(self, callback: CallbackQuery, bot: Bot) -> None:
        try:
            cmd = decode_callback(callback.data)
        except MalformedCommand as e:
            logger.warning("malformed callback from %s: %s", callback.from_user.id, e)
            await self._answer(callback, MALFORMED_COMMAND_TEXT)
            return

        if isinstance(cmd, Unknown):
            await self._answer(callback, UNKNOWN_COMMAND_TEXT)
            return

        try:
            await self.dispatch(cmd, Turn.from_callback(callback, bot))
        finally:
            await self._answer(callback)

    # =========================================================================
    # Диспетчер
    # =========================================================================
    async def dispatch(self, cmd: AnyCommand, turn: Turn) -> None:
        """
        Единая граница: проверка регистрации, вызов действия, разбор ошибок.
        UserNotFound → экран регистрации; сбой API → короткое извинение.
        """
        action = self._actions.get(type(cmd))
        if action is None:
            logger.warning("no action for %r", cmd)
            return
        try:
            if cmd.requires_account:
                await self._accounts.require_account(turn.chat_id)
            await action(cmd, turn)
        except UserNotFound:
            await self._show_registration(turn)
        except (BackendError, AuthError) as e:
            logger.error("action %s failed for chat %s: %s", type(cmd).__name__, turn.chat_id, e)
            await self._send_text(turn, APOLOGIES.get(type(cmd), DEFAULT_APOLOGY))

    # =========================================================================
    # Вывод
    # =========================================================================
    async def _answer(self, callback: CallbackQuery, text: Optional[str] = None) -> None:
        try:
            await callback.answer(text)
        except TelegramAPIError as e:
            logger.debug("callback answer failed: %s", e)

    async def _drop_source(self, turn: Turn) -> None:
        """Удаляет сообщение, на кнопку которого нажали (один раз за апдейт)."""
        if turn.callback is None or turn.callback.message is None or turn.source_dropped:
            return
        turn.source_dropped = True
        try:
            await turn.callback.message.delete()
        except TelegramAPIError as e:
            logger.info("delete callback message error: %s", e)

    async def _send_text(
        self,
        turn: Turn,
        text: str,
        reply_markup: Optional[InlineKeyboardMarkup] = None,
        parse_mode: Optional[str] = None,
    ) -> None:
        await turn.bot.send_message(
            chat_id=turn.chat_id, text=text, reply_markup=reply_markup, parse_mode=parse_mode
        )

    async def _send_screen(
        self,
        turn: Turn,
        caption: str,
        reply_markup: Optional[InlineKeyboardMarkup] = None,
        parse_mode: Optional[str] = None,
    ) -> None:
        """Экран: логотип + подпись + клавиатура. Фоллбэк: просто текст."""
        try:
            await turn.bot.send_photo(
                chat_id=turn.chat_id,
                photo=self._config.telegram.logo_url,
                caption=caption,
                reply_markup=reply_markup,
                parse_mode=parse_mode,
            )
            return
        except TelegramBadRequest as e:
            logger.warning("failed to send logo screen: %s", e)
        await self._send_text(turn, caption, reply_markup, parse_mode)

    async def _show_registration(self, turn: Turn) -> None:
        await self._send_text(turn, REGISTRATION_TEXT, kb.registration_kb())

    # =========================================================================
    # Действия
    # =========================================================================
    async def _start(self, cmd: Start, turn: Turn) -> None:
        # Допуск выдаётся до проверки регистрации
        self._gate.grant_from_start_param(turn.chat_id, cmd.param)

        user = await self._accounts.resolve_account(turn.chat_id)
        if user is None:
            await self._show_registration(turn)
            return
        await self._menu(Menu(), turn)

    async def _register(self, cmd: Register, turn: Turn) -> None:
        if turn.sender is None:
            logger.warning("register without sender in chat %s", turn.chat_id)
            return
        await self._drop_source(turn)
        if await self._accounts.resolve_account(turn.chat_id) is None:
            await self._accounts.register(turn.sender)
        await self._menu(Menu(), turn)

    async def _menu(self, cmd: Menu, turn: Turn) -> None:
        await self._drop_source(turn)
        trial = await self._gate.offer(turn.chat_id)
        tg = self._config.telegram
        await self._send_screen(
            turn,
            MAIN_MENU_TEXT,
            kb.main_menu_kb(tg.support_chat_url, tg.news_channel_url, trial),
        )

    async def _balance(self, cmd: Balance, turn: Turn) -> None:
        await self._drop_source(turn)
        bal = await self._accounts.balance(turn.chat_id)
        pay_url = kb.payment_webapp_url(
            self._config.api.base_url, bal.user_id, self._config.telegram.payments_profile
        )
        text = f"💰 *Баланс*: {bal.balance:.2f}\n\nНеобходимо оплатить: *{bal.forecast:.2f}*"
        await self._send_screen(turn, text, kb.balance_kb(pay_url), ParseMode.MARKDOWN)

    async def _list(self, cmd: ListServices, turn: Turn) -> None:
        await self._drop_source(turn)
        services = await self._accounts.services(turn.chat_id)
        await self._send_screen(turn, LIST_TEXT, kb.services_kb(services))

    async def _pricelist(self, cmd: Pricelist, turn: Turn) -> None:
        await self._drop_source(turn)
        catalog = await self._accounts.catalog()
        trial = await self._gate.offer(turn.chat_id)
        await self._send_screen(turn, PRICELIST_TEXT, kb.pricelist_kb(catalog, trial))

    async def _help(self, cmd: Help, turn: Turn) -> None:
        await self._drop_source(turn)
        await self._send_screen(
            turn, HELP_TEXT, kb.help_kb(self._config.telegram.support_chat_url), ParseMode.HTML
        )

    async def _pays(self, cmd: Pays, turn: Turn) -> None:
        await self._drop_source(turn)
        pays = await self._accounts.payments(turn.chat_id)
        await self._send_screen(turn, PAYS_TEXT, kb.pays_kb(pays))

    async def _service(self, cmd: ShowService, turn: Turn) -> None:
        await self._drop_source(turn)
        us = await self._accounts.service(turn.chat_id, cmd.service_id)
        if us is None:
            logger.info("service %s not found for chat %s", cmd.service_id, turn.chat_id)
            await self._send_text(turn, SERVICE_NOT_FOUND_TEXT)
            return

        icon, status = SERVICE_STATUS_TITLES.get(us.status, ("⏳", "Обработка"))
        lines = [f"<b>Ключ</b>: {icon} {us.name}"]
        if us.expire:
            lines.append(f"<b>Оплачен до</b>: {expire_str(us.expire)}")
        lines.append(f"<b>Статус</b>: {status}")
        await self._send_screen(turn, "\n\n".join(lines), kb.service_kb(us), ParseMode.HTML)

    async def _order(self, cmd: OrderService, turn: Turn) -> None:
        await self._accounts.order(turn.chat_id, cmd.service_id)
        await self._list(ListServices(), turn)

    async def _download_key(self, cmd: DownloadKey, turn: Turn) -> None:
        content = await self._accounts.download_key(turn.chat_id, cmd.service_id)
        await turn.bot.send_document(
            chat_id=turn.chat_id,
            document=BufferedInputFile(content, filename=f"vpn{cmd.service_id}.conf"),
        )

    async def _show_qr(self, cmd: ShowQr, turn: Turn) -> None:
        png = await self._accounts.key_qr(turn.chat_id, cmd.service_id)
        await turn.bot.send_photo(
            chat_id=turn.chat_id,
            photo=BufferedInputFile(png, filename="qr.png"),
            caption=QR_CAPTION,
        )

    async def _show_marzban_keys(self, cmd: ShowMarzbanKeys, turn: Turn) -> None:
        key = await self._accounts.marzban_key(turn.chat_id, cmd.service_id)
        if not key.subscription_url:
            await self._send_text(turn, NO_SUBSCRIPTION_TEXT)
            return

        await turn.bot.send_photo(
            chat_id=turn.chat_id,
            photo=BufferedInputFile(make_qr_png(key.subscription_url), filename="subscription.png"),
            caption=f"<b>Subscription URL:</b>\n<code>{key.subscription_url}</code>",
            parse_mode=ParseMode.HTML,
        )
        if not key.links:
            return
        link = key.links[0]
        title = "ShadowSocks" if link.startswith("ss") else "VLESS TCP"
        await turn.bot.send_photo(
            chat_id=turn.chat_id,
            photo=BufferedInputFile(make_qr_png(link), filename="link.png"),
            caption=f"<b>{title}:</b>\n<code>{link}</code>",
            parse_mode=ParseMode.HTML,
        )

    async def _delete(self, cmd: Delete, turn: Turn) -> None:
        # Шаг 1: только подтверждение, id едет в кнопке delete_confirmed
        await self._drop_source(turn)
        await self._send_text(
            turn, DELETE_CONFIRM_TEXT, kb.delete_confirm_kb(cmd.service_id), ParseMode.HTML
        )

    async def _delete_confirmed(self, cmd: DeleteConfirmed, turn: Turn) -> None:
        await self._accounts.delete(turn.chat_id, cmd.service_id)
        await self._drop_source(turn)
        if self._settle_delay > 0:
            await asyncio.sleep(self._settle_delay)
        await self._list(ListServices(), turn)

    async def _trial(self, cmd: Trial, turn: Turn) -> None:
        await self._drop_source(turn)
        decision = await self._gate.evaluate(turn.chat_id)
        if decision.reason == REASON_NEEDS_START_PARAM:
            await self._send_text(turn, TRIAL_NEEDS_LINK_TEXT)
            return
        if decision.reason == REASON_CLAIMED:
            await self._send_text(turn, TRIAL_CLAIMED_TEXT)
            return
        if decision.reason != REASON_AVAILABLE or decision.service is None:
            await self._send_text(turn, TRIAL_UNAVAILABLE_TEXT)
            return

        await self._accounts.order(turn.chat_id, decision.service.service_id)
        logger.info("trial service %s issued to chat %s", decision.service.service_id, turn.chat_id)
        await self._list(ListServices(), turn)
