# vpnbot/run.py
import asyncio
import logging
import signal
import sys
from contextlib import suppress

from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties
from aiogram.fsm.storage.memory import MemoryStorage
from aiogram.webhook.aiohttp_server import SimpleRequestHandler, setup_application
from aiohttp import web

from vpnbot import setup
from vpnbot.config import Config, load_config
from vpnbot.handlers.menu_handler import ConversationRouter
from vpnbot.utils.account_service import AccountService
from vpnbot.utils.api_client import BackendSession
from vpnbot.utils.errors import AuthError
from vpnbot.utils.trial_gate import TrialEligibilityGate

logger = logging.getLogger("vpnbot")

# Флаг для graceful shutdown
shutdown_event = asyncio.Event()


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    # чуть приглушим шум сетевых библиотек
    logging.getLogger("aiohttp.client").setLevel(logging.WARNING)
    logging.getLogger("aiogram").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _install_signal_handlers(loop: asyncio.AbstractEventLoop) -> None:
    def _stop(signum, frame):
        signal_name = "SIGTERM" if signum == signal.SIGTERM else "SIGINT"
        logger.warning("Получен сигнал %s, останавливаюсь...", signal_name)
        loop.call_soon_threadsafe(shutdown_event.set)

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)


async def _run_polling(dp: Dispatcher, bot: Bot) -> None:
    # встроенную обработку сигналов отключаем, останов идёт через shutdown_event
    await bot.delete_webhook(drop_pending_updates=False)
    polling_task = asyncio.create_task(dp.start_polling(bot, handle_signals=False), name="polling")
    stop_task = asyncio.create_task(shutdown_event.wait(), name="shutdown")

    done, _ = await asyncio.wait({polling_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
    if polling_task in done:
        exc = polling_task.exception()
        if exc:
            logger.error("polling завершился с ошибкой: %s", exc)
        stop_task.cancel()
        return

    with suppress(RuntimeError):
        await dp.stop_polling()
    with suppress(asyncio.CancelledError):
        await polling_task


async def _run_webhook(dp: Dispatcher, bot: Bot, cfg: Config) -> None:
    tg = cfg.telegram
    app = web.Application()
    SimpleRequestHandler(dispatcher=dp, bot=bot).register(app, path=tg.webhook_path)
    setup_application(app, dp, bot=bot)

    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", tg.webhook_port)
    await site.start()
    await bot.set_webhook(f"{tg.webhook_url}{tg.webhook_path}")
    logger.info("webhook слушает :%s%s", tg.webhook_port, tg.webhook_path)

    try:
        await shutdown_event.wait()
    finally:
        await runner.cleanup()


async def main() -> int:
    cfg = load_config()
    try:
        cfg.validate()
    except ValueError as e:
        logger.error("Ошибка конфигурации: %s", e)
        return 1

    session = BackendSession.from_config(cfg.api)
    try:
        await session.authenticate()
    except AuthError as e:
        logger.error("Не удалось авторизоваться в API: %s", e)
        await session.close()
        return 1
    logger.info("Авторизация в API выполнена")

    accounts = AccountService(session)
    gate = TrialEligibilityGate(cfg.trial, accounts)
    conversation = ConversationRouter(accounts, gate, cfg)

    bot = Bot(token=cfg.telegram.token, default=DefaultBotProperties())
    dp = Dispatcher(storage=MemoryStorage())
    setup(dp, conversation)

    _install_signal_handlers(asyncio.get_running_loop())
    refresh_task = asyncio.create_task(session.refresh_loop(shutdown_event), name="session_refresh")

    try:
        logger.info("Бот запущен (%s)", "webhook" if cfg.use_webhook else "polling")
        if cfg.use_webhook:
            await _run_webhook(dp, bot, cfg)
        else:
            await _run_polling(dp, bot)
    except Exception:
        logger.exception("Ошибка при работе бота")
        return 1
    finally:
        shutdown_event.set()
        refresh_task.cancel()
        with suppress(asyncio.CancelledError):
            await refresh_task
        await session.close()
        await bot.session.close()
        logger.info("Бот остановлен")
    return 0


def cli() -> None:
    _configure_logging(load_config().log_level)
    sys.exit(asyncio.run(main()))


if __name__ == '__main__':
    cli()
