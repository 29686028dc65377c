"""Хендлер изменений статуса участников группы."""

from aiogram import Router
from aiogram.types import ChatMemberUpdated
from loguru import logger

from gatebot.services.verification_service import VerificationService

group_monitor_router = Router(name="group_monitor_router")


@group_monitor_router.chat_member()
async def on_chat_member_updated(event: ChatMemberUpdated, verification_service: VerificationService):
    """
    Обрабатывает вступление и ограничение участников.

    Telegram может доставить одно и то же событие несколько раз,
    повторы отсекаются внутри VerificationService.
    """
    user = event.new_chat_member.user

    if user.is_bot or user.id == event.bot.id:
        logger.debug(f"🤖 Пропускаем бота {user.username}")
        return

    old_status = event.old_chat_member.status if event.old_chat_member else "left"
    logger.debug(f"📊 Статус {user.id} в {event.chat.id}: {old_status} -> {event.new_chat_member.status}")

    try:
        await verification_service.handle_chat_member_update(
            user,
            event.chat.id,
            event.chat.title,
            event.old_chat_member,
            event.new_chat_member,
        )
    except Exception as e:
        logger.error(f"Ошибка при обработке chat_member для {user.id} в группе {event.chat.id}: {e}")
