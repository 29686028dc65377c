"""Команды администраторов группы."""
import json

from aiogram import F, Router, html
from aiogram.filters import Command, CommandObject
from aiogram.types import Message
from loguru import logger

from config.settings import Settings
from gatebot.services.verification_service import VerificationService
from .core import resolve_target, user_is_admin_in_chat

admin_handlers_router = Router(name="admin_handlers")
admin_handlers_router.message.filter(F.chat.type.in_({"group", "supergroup"}))

USAGE = "Ответьте на сообщение пользователя или укажите его ID: <code>/{command} 123456789</code>"


@admin_handlers_router.message(Command("clearcaptcha", "forceverify", "captchadebug"))
async def admin_command(
    message: Message,
    command: CommandObject,
    verification_service: VerificationService,
    settings: Settings,
):
    """
    /clearcaptcha - удалить капчу пользователя
    /forceverify - снять ограничения без капчи
    /captchadebug - показать состояние верификации
    """
    is_admin = await user_is_admin_in_chat(message.from_user, message.chat.id, settings, message.bot)
    if not is_admin:
        logger.debug(f"❌ {message.from_user.id} не администратор группы {message.chat.id}")
        return

    key = resolve_target(message, command.args)
    if key is None:
        await message.reply(USAGE.format(command=command.command))
        return

    logger.info(f"🔧 /{command.command} от {message.from_user.id} для {key}")

    try:
        if command.command == "clearcaptcha":
            existed = await verification_service.clear_challenge(key)
            text = "🧹 Капча удалена." if existed else "ℹ️ У пользователя не было капчи."
        elif command.command == "forceverify":
            unrestricted = await verification_service.force_verify(key)
            text = "🔓 Ограничения сняты." if unrestricted else "❌ Не удалось снять ограничения."
        else:
            details = await verification_service.describe(key)
            dump = json.dumps(details, ensure_ascii=False, indent=2, default=str)
            text = f"🔍 <b>Состояние {key.user_id}</b>\n<pre>{html.quote(dump)}</pre>"
        await message.reply(text)
    except Exception as e:
        logger.exception(f"❌ Ошибка в админ-команде /{command.command}: {e}")
        await message.reply("❌ Произошла ошибка при обработке команды.")
