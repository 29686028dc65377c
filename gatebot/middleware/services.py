"""Middleware для передачи сервисов в обработчики."""

from typing import Callable, Dict, Any, Awaitable

from aiogram import BaseMiddleware
from aiogram.types import TelegramObject

from config.settings import Settings
from gatebot.services.verification_service import VerificationService


class ServiceMiddleware(BaseMiddleware):
    """
    Middleware для передачи сервисов в обработчики.

    VerificationService создается один раз на процесс: флаги состояния
    участников должны быть общими для всех событий.
    """

    def __init__(self, verification_service: VerificationService, settings: Settings):
        """Инициализация middleware."""
        super().__init__()
        self.verification_service = verification_service
        self.settings = settings

    async def __call__(
        self,
        handler: Callable[[TelegramObject, Dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: Dict[str, Any],
    ) -> Any:
        """Выполнение middleware."""
        data["verification_service"] = self.verification_service
        data["settings"] = self.settings
        return await handler(event, data)
