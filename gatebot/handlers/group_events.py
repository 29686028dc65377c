from aiogram import F, Router
from aiogram.types import Message
from loguru import logger

from gatebot.services.verification_service import VerificationService

group_events_router = Router(name="group_events_router")
group_events_router.message.filter(F.chat.type.in_({"group", "supergroup"}))

IGNORED_CONTENT_TYPES = {"left_chat_member", "pinned_message", "new_chat_title", "new_chat_photo"}


@group_events_router.message(F.new_chat_members)
async def on_new_chat_members(message: Message, verification_service: VerificationService):
    """Служебное сообщение о вступлении, приходит вместе с chat_member событием."""
    users = [user for user in message.new_chat_members if user.id != message.bot.id]
    if not users:
        return

    logger.debug(f"👥 new_chat_members в {message.chat.id}: {[user.id for user in users]}")
    try:
        await verification_service.handle_new_members(users, message.chat.id, message.chat.title)
    except Exception as e:
        logger.error(f"Ошибка при обработке новых участников в группе {message.chat.id}: {e}")


@group_events_router.message()
async def on_group_message(message: Message, verification_service: VerificationService):
    """
    Любое сообщение в группе: продление верификации до постоянной
    или ответ на капчу прямо в группе.
    """
    if not message.from_user or message.from_user.is_bot:
        return

    if message.content_type in IGNORED_CONTENT_TYPES:
        return

    if message.text and message.text.startswith('/'):
        return

    try:
        await verification_service.handle_group_message(message.from_user, message.chat.id, message.text)
    except Exception as e:
        logger.error(f"Ошибка при обработке сообщения {message.from_user.id} в группе {message.chat.id}: {e}")
