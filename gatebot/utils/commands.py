"""Module for setting up bot commands."""
from aiogram import Bot
from aiogram.exceptions import TelegramBadRequest
from aiogram.types import (
    BotCommand,
    BotCommandScopeAllChatAdministrators,
    BotCommandScopeAllGroupChats,
    BotCommandScopeAllPrivateChats,
    BotCommandScopeDefault,
)
from loguru import logger


async def set_bot_commands(bot: Bot):
    """
    Sets up the commands for the bot in the Telegram UI.

    Private chats get /start, group administrators get the moderation commands,
    regular group members see nothing.
    """
    try:
        await bot.delete_my_commands(scope=BotCommandScopeDefault())
        await bot.delete_my_commands(scope=BotCommandScopeAllGroupChats())
        logger.info("Старые команды бота очищены")
    except TelegramBadRequest as e:
        logger.warning(f"Ошибка при очистке команд: {e}")

    private_commands = [
        BotCommand(command="start", description="Проверка для вступления в группу"),
    ]

    admin_commands = [
        BotCommand(command="clearcaptcha", description="Удалить капчу пользователя"),
        BotCommand(command="forceverify", description="Снять ограничения без капчи"),
        BotCommand(command="captchadebug", description="Состояние проверки пользователя"),
    ]

    try:
        await bot.set_my_commands(private_commands, scope=BotCommandScopeAllPrivateChats())
        logger.info("Команды бота настроены для личных сообщений")

        await bot.set_my_commands(admin_commands, scope=BotCommandScopeAllChatAdministrators())
        logger.info("Команды администраторов настроены для групп")
    except TelegramBadRequest as e:
        logger.error(f"Не удалось установить команды бота: {e}")
