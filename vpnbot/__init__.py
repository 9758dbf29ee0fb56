# vpnbot/__init__.py
from aiogram import Router, Dispatcher

from vpnbot.handlers import register_routers
from vpnbot.handlers.menu_handler import ConversationRouter


def setup(dp: Dispatcher, conversation: ConversationRouter) -> None:
    main_router = Router()
    register_routers(main_router, conversation)
    dp.include_router(main_router)


__all__ = ["setup"]
