#!/usr/bin/env python3
"""
Запуск бота-капчи для Telegram-групп.

Использование:
    python start.py

Перед первым запуском проверьте конфигурацию: python validate_config.py
"""

import sys
import asyncio
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from config.settings import Settings
from gatebot.app import BotApp

PROJECT_ROOT = Path(__file__).parent


def setup_logging(settings: Settings) -> None:
    logger.remove()
    logger.add(sys.stderr, level=settings.log_level)
    logger.add(settings.log_file, level=settings.log_level, rotation="10 MB", retention=1, encoding="utf-8")


def load_settings() -> Settings:
    """Читает .env и завершает процесс с понятным сообщением при ошибке."""
    if not (PROJECT_ROOT / ".env").exists():
        logger.critical("❌ Файл .env не найден. Скопируйте env.example в .env и укажите BOT_TOKEN")
        sys.exit(1)

    try:
        return Settings()
    except ValidationError as e:
        logger.critical(f"❌ Ошибка конфигурации:\n{e}")
        sys.exit(1)


def main():
    settings = load_settings()
    setup_logging(settings)

    mode = "webhook" if settings.use_webhook else "polling"
    logger.info(f"🚀 Запуск бота-капчи ({mode}), попыток на капчу: {settings.max_captcha_attempts}")
    logger.info("📋 Для остановки нажмите Ctrl+C")

    try:
        asyncio.run(BotApp(settings).run())
    except (KeyboardInterrupt, SystemExit):
        logger.info("✅ Бот остановлен.")


if __name__ == "__main__":
    if sys.version_info < (3, 10):
        logger.critical(f"Требуется Python 3.10 или выше, текущая версия {sys.version.split()[0]}")
        sys.exit(1)
    main()
