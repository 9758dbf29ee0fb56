# vpnbot/handlers/clicklog_mw.py
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict

from aiogram import BaseMiddleware
from aiogram.types import CallbackQuery, Message

from vpnbot.utils.commands import MalformedCommand, Unknown, decode_callback, encode

logger = logging.getLogger("vpnbot.clicks")

MAX_LEN = 256


def _compact(s: str, max_len: int = MAX_LEN) -> str:
    if not s:
        return ""
    s = " ".join(s.split())  # схлопываем все пробелы/переносы
    return s[:max_len]


def _describe_callback(data: str) -> str:
    """Разобранная команда для лога; мусорные payload помечаем."""
    try:
        cmd = decode_callback(data)
    except MalformedCommand:
        return f"malformed:{_compact(data)}"
    if isinstance(cmd, Unknown):
        return f"unknown:{_compact(cmd.raw)}"
    return encode(cmd)


class CallbackClickLogger(BaseMiddleware):
    async def __call__(
        self,
        handler: Callable[[CallbackQuery, Dict[str, Any]], Awaitable[Any]],
        event: CallbackQuery,
        data: Dict[str, Any]
    ) -> Any:
        try:
            return await handler(event, data)
        finally:
            uid = event.from_user.id if event.from_user else None
            if uid:
                logger.info("user %s CB:%s", uid, _describe_callback(event.data or ""))


class MessageLogger(BaseMiddleware):
    async def __call__(
        self,
        handler: Callable[[Message, Dict[str, Any]], Awaitable[Any]],
        event: Message,
        data: Dict[str, Any]
    ) -> Any:
        try:
            return await handler(event, data)
        finally:
            uid = event.from_user.id if event.from_user else None
            if uid:
                raw = event.text or event.caption or ""
                if raw:
                    logger.info("user %s TEXT:%s", uid, _compact(raw))
                else:
                    # фото/стикеры и прочее без текста
                    logger.info("user %s MSG:%s", uid, (event.content_type or "unknown").upper())
