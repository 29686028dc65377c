"""Сборка и запуск бота-капчи: polling или webhook."""

import asyncio
from typing import List, Optional

from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiogram.webhook.aiohttp_server import SimpleRequestHandler, setup_application
from aiohttp import web
from loguru import logger

from config.settings import Settings
from gatebot.database.manager import DatabaseManager
from gatebot.dispatcher_setup import setup_dispatcher
from gatebot.services.platform import ChatPlatform
from gatebot.services.verification_service import VerificationService
from gatebot.utils.commands import set_bot_commands

# Без явного chat_member Telegram не присылает события о статусе участников
REQUIRED_UPDATES = ("message", "chat_member")


class BotApp:
    """
    Владелец всех долгоживущих объектов процесса.

    Один VerificationService на процесс: флаги в памяти должны быть общими
    для всех обработчиков. Ресурсы освобождаются в run() при любом исходе.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.bot: Optional[Bot] = None
        self.dp: Optional[Dispatcher] = None
        self.db_manager: Optional[DatabaseManager] = None
        self.verification_service: Optional[VerificationService] = None

    async def _setup_bot_and_dispatcher(self):
        self.bot = Bot(
            token=self.settings.get_bot_token(),
            default=DefaultBotProperties(parse_mode=ParseMode.HTML),
        )
        self.dp = Dispatcher()

    async def _setup_database(self):
        self.db_manager = DatabaseManager(self.settings.database_path)
        await self.db_manager.init_database()

    async def _setup_dispatcher(self):
        self.verification_service = VerificationService(
            platform=ChatPlatform(self.bot),
            db_manager=self.db_manager,
            settings=self.settings,
        )
        setup_dispatcher(
            dp=self.dp,
            verification_service=self.verification_service,
            settings=self.settings,
        )
        self.dp.startup.register(self.on_startup)

    async def on_startup(self):
        """Регистрирует меню команд. Ошибка здесь не мешает работе бота."""
        try:
            await set_bot_commands(self.bot)
        except Exception as e:
            logger.error(f"⚠️ Меню команд не обновлено: {e}")
        logger.info("🟢 Бот-капча принимает обновления")

    async def close(self):
        """Закрывает базу и HTTP-сессию бота."""
        if self.db_manager:
            await self.db_manager.close()
        if self.bot:
            await self.bot.session.close()
        logger.info("🔴 Бот-капча остановлен, ресурсы освобождены")

    def _allowed_updates(self) -> List[str]:
        allowed_updates = self.dp.resolve_used_update_types()
        for update_type in REQUIRED_UPDATES:
            if update_type not in allowed_updates:
                allowed_updates.append(update_type)
        return allowed_updates

    async def _run_polling(self, allowed_updates: List[str]):
        await self.bot.delete_webhook(drop_pending_updates=False)
        logger.info("📡 Режим long polling")
        await self.dp.start_polling(self.bot, allowed_updates=allowed_updates)

    async def _run_webhook(self, allowed_updates: List[str]):
        """
        Запуск в режиме webhook.

        Update обрабатывается в фоне, Telegram сразу получает 200 OK
        независимо от результата обработки.
        """
        app = web.Application()
        SimpleRequestHandler(
            dispatcher=self.dp,
            bot=self.bot,
            handle_in_background=True,
            secret_token=self.settings.get_webhook_secret(),
        ).register(app, path=self.settings.webhook_path)
        setup_application(app, self.dp, bot=self.bot)

        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, host=self.settings.webapp_host, port=self.settings.webapp_port)
        await site.start()

        webhook_url = self.settings.webhook_url.rstrip("/") + self.settings.webhook_path
        await self.bot.set_webhook(
            webhook_url,
            allowed_updates=allowed_updates,
            secret_token=self.settings.get_webhook_secret(),
        )
        logger.info(f"📡 Webhook установлен: {webhook_url}")

        try:
            await asyncio.Event().wait()
        finally:
            await runner.cleanup()

    async def run(self):
        try:
            await self._setup_bot_and_dispatcher()
            await self._setup_database()
            await self._setup_dispatcher()

            allowed_updates = self._allowed_updates()
            logger.debug(f"Типы обновлений: {allowed_updates}")

            if self.settings.use_webhook:
                await self._run_webhook(allowed_updates)
            else:
                await self._run_polling(allowed_updates)
        except Exception as e:
            logger.opt(exception=e).critical(f"💥 Бот-капча остановлен из-за ошибки: {e}")
        finally:
            await self.close()
