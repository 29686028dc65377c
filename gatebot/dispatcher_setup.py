"""
Настройка и регистрация всех обработчиков и middleware для диспетчера.
"""
from aiogram import Dispatcher
from loguru import logger

from config.settings import Settings
from gatebot.handlers.admin import admin_router
from gatebot.handlers.errors import errors_router
from gatebot.handlers.group_events import group_events_router
from gatebot.handlers.group_monitor import group_monitor_router
from gatebot.handlers.verification import verification_router
from gatebot.middleware.services import ServiceMiddleware
from gatebot.services.verification_service import VerificationService


def setup_dispatcher(
    dp: Dispatcher,
    verification_service: VerificationService,
    settings: Settings,
) -> None:
    """
    Настраивает диспетчер, регистрируя middleware и обработчики.

    Args:
        dp: Экземпляр Dispatcher.
        verification_service: Общий сервис верификации.
        settings: Конфигурация бота.
    """
    service_middleware = ServiceMiddleware(
        verification_service=verification_service,
        settings=settings,
    )
    dp.update.middleware(service_middleware)

    dp.include_router(errors_router)
    dp.include_router(admin_router)
    dp.include_router(verification_router)
    dp.include_router(group_monitor_router)

    # Последним: ловит все остальные сообщения в группах
    dp.include_router(group_events_router)

    logger.info("Все обработчики успешно зарегистрированы.")
