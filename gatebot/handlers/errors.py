"""Последний рубеж: необработанные исключения в хендлерах."""

from aiogram import Router
from aiogram.types import ErrorEvent
from loguru import logger

errors_router = Router(name="errors_router")


@errors_router.error()
async def on_unhandled_error(event: ErrorEvent) -> bool:
    """
    Логирует исключение и помечает update обработанным.

    Telegram не должен получать ошибку в ответ на webhook, иначе он будет
    доставлять то же событие снова.
    """
    update_id = event.update.update_id if event.update else "?"
    logger.opt(exception=event.exception).error(
        f"💥 Необработанная ошибка при обработке update {update_id}: {event.exception}"
    )
    return True
