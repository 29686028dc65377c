"""Хендлеры ответа на капчу в личных сообщениях."""

from aiogram import Router, F
from aiogram.filters import CommandStart
from aiogram.types import Message
from loguru import logger

from gatebot.services.verification_service import VerificationService

verification_router = Router(name='verification')
verification_router.message.filter(F.chat.type == "private")


@verification_router.message(CommandStart())
async def start_command(message: Message, verification_service: VerificationService):
    """Команда /start, в том числе по ссылке из группы."""
    await verification_service.handle_start(message.from_user)


@verification_router.message(F.text)
async def captcha_answer(message: Message, verification_service: VerificationService):
    """Текст в личных сообщениях считается ответом на капчу."""
    if message.text.startswith('/'):
        return

    logger.debug(f"🔑 Ответ на капчу от {message.from_user.id}")
    try:
        await verification_service.handle_private_text(message.from_user, message.text)
    except Exception as e:
        logger.error(f"Ошибка при проверке кода пользователя {message.from_user.id}: {e}")
        await message.answer(
            "❌ <b>Ошибка при проверке кода</b>\n\n"
            "Попробуйте еще раз позже или обратитесь к администратору группы."
        )
