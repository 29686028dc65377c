"""Базовые функции для административных операций."""
from typing import Optional

from aiogram.types import Message, User
from loguru import logger

from config.settings import Settings
from gatebot.database.models.key import VerificationKey


async def user_is_admin_in_chat(user: User, chat_id: int, settings: Settings, bot) -> bool:
    """
    Проверяет, является ли пользователь администратором в указанном чате,
    учитывая глобальных администраторов из настроек и реальные права в Telegram.
    """
    if user.is_bot and user.username == "GroupAnonymousBot":
        return True

    if user.is_bot:
        return False

    if user.id in settings.admin_user_ids:
        return True

    try:
        chat_member = await bot.get_chat_member(chat_id, user.id)
        if chat_member.status in ["administrator", "creator"]:
            return True
    except Exception as e:
        logger.warning(f"⚠️ Не удалось проверить статус администратора для {user.id} в группе {chat_id}: {e}")

    return False


def resolve_target(message: Message, args: Optional[str]) -> Optional[VerificationKey]:
    """
    Определяет пользователя, к которому относится команда.

    Поддерживаются ответ на сообщение пользователя и числовой ID в аргументах.
    """
    if args:
        value = args.split()[0]
        if value.lstrip('-').isdigit():
            return VerificationKey(int(value), message.chat.id)
        return None

    reply = message.reply_to_message
    if reply and reply.from_user and not reply.from_user.is_bot:
        return VerificationKey(reply.from_user.id, message.chat.id)

    return None
