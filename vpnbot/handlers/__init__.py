# vpnbot/handlers/__init__.py
from aiogram import Router

from .clicklog_mw import CallbackClickLogger, MessageLogger
from .menu_handler import ConversationRouter


def register_routers(rt: Router, conversation: ConversationRouter):
    # Логирование всех входящих сообщений и нажатий
    rt.message.outer_middleware(MessageLogger())
    rt.callback_query.outer_middleware(CallbackClickLogger())

    conversation.router(rt)
