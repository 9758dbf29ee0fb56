# vpnbot/utils/errors.py
from __future__ import annotations

from typing import Optional


class BotError(Exception):
    """Базовое исключение бота."""


class UserNotFound(BotError):
    """К чату не привязан аккаунт в биллинге. Лечится регистрацией, а не извинением."""

    def __init__(self, chat_id: int):
        self.chat_id = chat_id
        super().__init__(f"user not found for chat {chat_id}")


class AuthError(BotError):
    """Не удалось получить session_id."""


class BackendError(BotError):
    """Ответ API не 2xx или не разбирается."""

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        self.status = status
        self.body = body
        super().__init__(message)

    def __str__(self) -> str:
        base = super().__str__()
        if self.status is None:
            return base
        return f"{base} (status={self.status}, body={self.body[:200]!r})"


class TransportError(BackendError):
    """Сетевой сбой: таймаут, обрыв соединения."""
