# vpnbot/utils/account_service.py
from __future__ import annotations

import logging
import random
import string
from typing import List, Optional

from aiogram.types import User as TgUser

from vpnbot.utils.api_client import BackendSession
from vpnbot.utils.errors import UserNotFound
from vpnbot.utils.models import (
    MarzbanKey,
    RegistrationRequest,
    Service,
    TelegramInfo,
    User,
    UserBalance,
    UserPay,
    UserService,
    UserSettings,
)
from vpnbot.utils.qr import make_qr_png

logger = logging.getLogger(__name__)

PASSWORD_LENGTH = 12
_PASSWORD_ALPHABET = string.ascii_letters + string.digits


def login_for_chat(chat_id: int) -> str:
    return f"@{chat_id}"


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    """
    Пароль аккаунта в биллинге. Пользователю не показывается и входом не служит:
    аутентификация идёт через привязку к чату, поэтому random, а не secrets.
    """
    return "".join(random.choices(_PASSWORD_ALPHABET, k=length))


class AccountService:
    """Чат → аккаунт биллинга + операции, требующие существующего аккаунта."""

    def __init__(self, session: BackendSession):
        self._session = session

    async def resolve_account(self, chat_id: int) -> Optional[User]:
        """
        Аккаунт, привязанный к чату, или None.
        Фильтр API сужает только по логину, поэтому chat_id сверяем сами.
        """
        for user in await self._session.find_accounts(login_for_chat(chat_id)):
            if user.chat_id == chat_id:
                return user
        return None

    async def require_account(self, chat_id: int) -> User:
        user = await self.resolve_account(chat_id)
        if user is None:
            raise UserNotFound(chat_id)
        return user

    async def register(self, tg_user: TgUser) -> None:
        full_name = " ".join(p for p in (tg_user.first_name, tg_user.last_name) if p)
        request = RegistrationRequest(
            login=login_for_chat(tg_user.id),
            password=generate_password(),
            full_name=full_name,
            settings=UserSettings(
                telegram=TelegramInfo(
                    user_id=str(tg_user.id),
                    username=tg_user.username or "",
                    login=tg_user.username or "",
                    first_name=tg_user.first_name or "",
                    last_name=tg_user.last_name or "",
                    language_code=tg_user.language_code or "",
                    is_premium=bool(tg_user.is_premium),
                    chat_id=tg_user.id,
                    profile={"chat_id": tg_user.id, "status": "member"},
                )
            ),
        )
        await self._session.register_account(request)
        logger.info("registered account for chat %s", tg_user.id)

    # ──────────────────────────────────────────────────────────────────────
    # Операции над аккаунтом
    # ──────────────────────────────────────────────────────────────────────
    async def balance(self, chat_id: int) -> UserBalance:
        user = await self.require_account(chat_id)
        return await self._session.get_balance(user.id)

    async def services(self, chat_id: int) -> List[UserService]:
        user = await self.require_account(chat_id)
        return await self._session.list_user_services(user.id)

    async def service(self, chat_id: int, user_service_id: int) -> Optional[UserService]:
        user = await self.require_account(chat_id)
        return await self._session.get_user_service(user.id, user_service_id)

    async def order(self, chat_id: int, service_id: int) -> Optional[UserService]:
        user = await self.require_account(chat_id)
        return await self._session.place_order(user.id, service_id)

    async def delete(self, chat_id: int, user_service_id: int) -> None:
        user = await self.require_account(chat_id)
        await self._session.delete_user_service(user.id, user_service_id)

    async def download_key(self, chat_id: int, user_service_id: int) -> bytes:
        user = await self.require_account(chat_id)
        return await self._session.download_user_key_file(user.id, user_service_id)

    async def key_qr(self, chat_id: int, user_service_id: int) -> bytes:
        content = await self.download_key(chat_id, user_service_id)
        return make_qr_png(content.decode("utf-8", errors="ignore"))

    async def marzban_key(self, chat_id: int, user_service_id: int) -> MarzbanKey:
        user = await self.require_account(chat_id)
        return await self._session.get_marzban_key(user.id, user_service_id)

    async def payments(self, chat_id: int) -> List[UserPay]:
        user = await self.require_account(chat_id)
        return await self._session.list_payments(user.id)

    async def has_trial_withdrawal(self, chat_id: int, service_id: int) -> bool:
        user = await self.require_account(chat_id)
        return await self._session.has_trial_withdrawal(user.id, service_id)

    # Каталог не привязан к аккаунту
    async def catalog(self) -> List[Service]:
        return await self._session.list_catalog()

    async def catalog_item(self, service_id: int) -> Optional[Service]:
        return await self._session.get_catalog_item(service_id)
