"""Сервис ограничения и снятия ограничений с участников группы."""
import asyncio

from aiogram.exceptions import TelegramAPIError
from loguru import logger

from config.settings import Settings
from gatebot.database.models.key import VerificationKey
from gatebot.services.membership_state import MembershipStateStore
from gatebot.services.platform import (
    ChatPlatform,
    PermissionEncoding,
    RESTRICT_ENCODINGS,
    UNRESTRICT_ENCODINGS,
)
from gatebot.services.records import VerificationRecords


class RestrictionController:
    """
    Применяет и снимает ограничения через Telegram.

    Ограничение: наборы прав перебираются по очереди до первого успеха.
    Снятие: все наборы отправляются одновременно, вся последовательность
    повторяется несколько раз с паузой и ограничена таймаутом.
    """

    def __init__(
        self,
        platform: ChatPlatform,
        state: MembershipStateStore,
        records: VerificationRecords,
        settings: Settings,
    ):
        self.platform = platform
        self.state = state
        self.records = records
        self.settings = settings

    async def restrict(self, key: VerificationKey) -> bool:
        """
        Запрещает пользователю отправлять сообщения.

        Returns:
            True, если один из наборов прав был принят Telegram
        """
        if self.state.is_cleared(key):
            logger.info(f"🛡️ Пользователь {key.user_id} уже верифицирован в {key.chat_id}, ограничение пропущено")
            return False

        with self.state.restricting.hold(key) as acquired:
            if not acquired:
                logger.debug(f"🔒 Ограничение {key} уже выполняется, пропускаем")
                return False

            self.state.restricted_by_us.mark(key)
            for encoding in RESTRICT_ENCODINGS:
                try:
                    await self.platform.restrict_member(key.chat_id, key.user_id, encoding)
                    logger.info(f"🔇 Пользователь {key.user_id} ограничен в {key.chat_id} ({encoding.name})")
                    return True
                except TelegramAPIError as e:
                    logger.warning(f"⚠️ Не удалось ограничить {key} набором {encoding.name}: {e}")
                except Exception as e:
                    logger.error(f"❌ Ошибка при ограничении {key} набором {encoding.name}: {e}")

            logger.error(f"❌ Не удалось ограничить пользователя {key.user_id} в {key.chat_id} ни одним способом")
            return False

    async def unrestrict(self, key: VerificationKey, persist: bool = True) -> bool:
        """
        Возвращает пользователю все права на отправку сообщений.

        Флаги верификации ставятся до обращения к Telegram: эхо-событие об
        изменении статуса, пришедшее во время запроса, увидит пользователя
        уже верифицированным.

        Args:
            key: Пользователь и группа
            persist: Записать верификацию в БД (best-effort)

        Returns:
            True, если хотя бы один запрос в одном из повторов прошел успешно.
            Если снятие ограничений уже выполняется, сразу True.
        """
        token = self.state.unrestricting.try_acquire(key)
        if token is None:
            logger.debug(f"🔓 Снятие ограничений для {key} уже выполняется")
            return True

        try:
            self.state.mark_verified(key)
            if persist:
                await self.persist_verification(key)

            retries = self.settings.unrestrict_max_retries
            for attempt in range(1, retries + 1):
                try:
                    succeeded = await asyncio.wait_for(
                        self._apply_unrestrict(key), timeout=self.settings.unrestrict_timeout
                    )
                except asyncio.TimeoutError:
                    logger.warning(f"⏱️ Таймаут снятия ограничений для {key} (попытка {attempt}/{retries})")
                    succeeded = False

                if succeeded:
                    logger.success(f"🔓 Ограничения сняты с {key.user_id} в {key.chat_id} (попытка {attempt})")
                    return True

                if attempt < retries:
                    await asyncio.sleep(self.settings.unrestrict_retry_delay)

            logger.error(f"❌ Не удалось снять ограничения с {key.user_id} в {key.chat_id} за {retries} попыток")
            return False
        finally:
            self.state.unrestricting.release(key, token)

    async def _apply_unrestrict(self, key: VerificationKey) -> bool:
        results = await asyncio.gather(
            *(self._try_unrestrict(key, encoding) for encoding in UNRESTRICT_ENCODINGS)
        )
        return any(results)

    async def _try_unrestrict(self, key: VerificationKey, encoding: PermissionEncoding) -> bool:
        try:
            await self.platform.unrestrict_member(key.chat_id, key.user_id, encoding)
            return True
        except Exception as e:
            logger.debug(f"Набор {encoding.name} не применился для {key}: {e}")
            return False

    async def persist_verification(self, key: VerificationKey) -> bool:
        """Пишет верификацию в БД; при ошибке пользователь остается верифицированным в памяти."""
        saved = await self.records.save_verification(key)
        if not saved:
            self.state.verified_memory_fallback.mark(key)
            logger.warning(f"💾 Верификация {key} сохранена только в памяти")
        return saved

    async def kick(self, key: VerificationKey) -> bool:
        """Исключает пользователя из группы с возможностью вернуться (бан + разбан)."""
        try:
            await self.platform.ban_member(key.chat_id, key.user_id)
        except Exception as e:
            logger.error(f"❌ Не удалось исключить {key.user_id} из {key.chat_id}: {e}")
            return False

        try:
            await self.platform.unban_member(key.chat_id, key.user_id)
        except Exception as e:
            logger.warning(f"⚠️ Не удалось разбанить {key.user_id} в {key.chat_id}: {e}")

        logger.info(f"👢 Пользователь {key.user_id} исключен из {key.chat_id}")
        return True
