# vpnbot/keyboards/inline.py
from typing import Iterable, List, Optional
from urllib.parse import quote_plus

from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup, WebAppInfo
from aiogram.utils.keyboard import InlineKeyboardBuilder

from vpnbot.utils.commands import (
    Balance,
    Delete,
    DeleteConfirmed,
    DownloadKey,
    Help,
    ListServices,
    Menu,
    OrderService,
    Pays,
    Pricelist,
    Register,
    ShowMarzbanKeys,
    ShowQr,
    ShowService,
    Trial,
    encode,
)
from vpnbot.utils.models import (
    STATUS_ACTIVE,
    STATUS_BLOCK,
    STATUS_NOT_PAID,
    STATUS_PROGRESS,
    Service,
    UserPay,
    UserService,
)

BACK_TEXT = "⇦ Назад"


def _btn(text: str, cmd) -> InlineKeyboardButton:
    return InlineKeyboardButton(text=text, callback_data=encode(cmd))


def status_icon(status: Optional[str]) -> str:
    if status == STATUS_ACTIVE:
        return "✅"
    if status == STATUS_BLOCK:
        return "❌"
    return "⏳"


def registration_kb() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[[_btn("Регистрация ✍", Register())]])


def main_menu_kb(
    support_url: str,
    news_url: str = "",
    trial_service: Optional[Service] = None,
) -> InlineKeyboardMarkup:
    rows: List[List[InlineKeyboardButton]] = [
        [_btn("💰 Баланс", Balance())],
        [_btn("🗝 Список ключей доступа", ListServices())],
    ]
    if trial_service is not None:
        rows.append([_btn(trial_service.name or "Тест", Trial())])
    rows.append([_btn("🗓 Помощь", Help())])
    if news_url:
        rows.append([InlineKeyboardButton(text="📣 Новости", url=news_url)])
    rows.append([InlineKeyboardButton(text="🛟 Поддержка", url=support_url)])
    return InlineKeyboardMarkup(inline_keyboard=rows)


def payment_webapp_url(base_url: str, user_id: int, profile: str) -> str:
    return (
        f"{base_url}/shm/v1/public/tg_payments_webapp"
        f"?format=html&user_id={user_id}&profile={quote_plus(profile)}"
    )


def balance_kb(pay_url: str) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        inline_keyboard=[
            [InlineKeyboardButton(text="✚ Пополнить баланс", web_app=WebAppInfo(url=pay_url))],
            [_btn("☰ История платежей", Pays())],
            [_btn(BACK_TEXT, Menu())],
        ]
    )


def services_kb(services: Iterable[UserService]) -> InlineKeyboardMarkup:
    builder = InlineKeyboardBuilder()
    for us in services:
        builder.row(_btn(f"{status_icon(us.status)} - {us.name}", ShowService(us.user_service_id)))
    builder.row(_btn("🛒 Новый ключ", Pricelist()))
    builder.row(_btn(BACK_TEXT, Menu()))
    return builder.as_markup()


def pricelist_kb(catalog: Iterable[Service], trial_service: Optional[Service] = None) -> InlineKeyboardMarkup:
    """Тестовая услуга (если положена) идёт первой строкой и без дубля в общем списке."""
    builder = InlineKeyboardBuilder()
    trial_id = trial_service.service_id if trial_service is not None else None
    if trial_service is not None:
        builder.row(_btn(trial_service.name or "Тест", Trial()))
    for svc in catalog:
        if trial_id is not None and svc.service_id == trial_id:
            continue
        builder.row(_btn(f"🛒 {svc.name} - {svc.cost:.2f} руб.", OrderService(str(svc.service_id))))
    builder.row(_btn(BACK_TEXT, Menu()))
    return builder.as_markup()


def service_kb(us: UserService) -> InlineKeyboardMarkup:
    sid = us.user_service_id
    rows: List[List[InlineKeyboardButton]] = []

    if us.status == STATUS_ACTIVE:
        if us.is_marzban and us.key_marzban is not None and us.key_marzban.subscription_url:
            rows.append([
                InlineKeyboardButton(
                    text="Показать данные для подключения",
                    web_app=WebAppInfo(url=f"{us.key_marzban.subscription_url}?telegram=true"),
                ),
                _btn("Показать ссылку подписки", ShowMarzbanKeys(sid)),
            ])
        elif not us.is_marzban:
            rows.append([
                _btn("🗝 Скачать ключ", DownloadKey(sid)),
                _btn("👀 Показать QR код", ShowQr(sid)),
            ])

    if us.status in (STATUS_NOT_PAID, STATUS_BLOCK):
        rows.append([_btn("💰 Оплатить", Balance())])

    if us.status != STATUS_PROGRESS:
        rows.append([_btn("❌ Удалить ключ", Delete(sid))])

    rows.append([_btn(BACK_TEXT, ListServices())])
    return InlineKeyboardMarkup(inline_keyboard=rows)


def delete_confirm_kb(service_id: int) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        inline_keyboard=[
            [_btn("🧨 ДА, УДАЛИТЬ! 🔥", DeleteConfirmed(service_id))],
            [_btn(BACK_TEXT, ListServices())],
        ]
    )


def help_kb(support_url: str) -> InlineKeyboardMarkup:
    builder = InlineKeyboardBuilder()
    builder.button(text="Чат поддержки", url=support_url)
    builder.button(text=BACK_TEXT, callback_data=encode(Menu()))
    builder.adjust(1)
    return builder.as_markup()


def pays_kb(pays: Iterable[UserPay]) -> InlineKeyboardMarkup:
    builder = InlineKeyboardBuilder()
    for pay in pays:
        builder.button(text=f"Дата: {pay.date}, Сумма: {pay.money:g} руб.", callback_data=encode(Menu()))
    builder.button(text=BACK_TEXT, callback_data=encode(Menu()))
    builder.adjust(1)
    return builder.as_markup()
