"""Перевод верификации из grace-периода в постоянную."""
from loguru import logger

from gatebot.database.models.key import VerificationKey
from gatebot.services.membership_state import MembershipStateStore
from gatebot.services.platform import ChatPlatform
from gatebot.services.records import VerificationRecords


class GracePromoter:
    """
    Следит за сообщениями в группе после верификации.

    Любое сообщение пользователя в течение grace-периода делает его
    верификацию постоянной. Сообщение после окончания окна ничего не меняет.
    """

    def __init__(self, state: MembershipStateStore, records: VerificationRecords, platform: ChatPlatform):
        self.state = state
        self.records = records
        self.platform = platform

    async def in_grace(self, key: VerificationKey) -> bool:
        if self.state.is_permanent(key):
            return False
        if self.state.is_in_grace(key):
            return True

        # Флаг в памяти мог пропасть после перезапуска, проверяем время верификации в БД
        record = await self.records.verified_within(key, self.state.grace_period)
        return bool(record and not record.permanent)

    async def on_group_message(self, key: VerificationKey) -> bool:
        """
        Обрабатывает сообщение пользователя в группе.

        Returns:
            True, если сообщение сделало верификацию постоянной
        """
        if not await self.in_grace(key):
            return False

        self.state.promote(key)
        saved = await self.records.mark_permanent(key)
        if saved:
            logger.success(f"🏅 Пользователь {key.user_id} постоянно верифицирован в {key.chat_id}")
        else:
            logger.warning(f"🏅 Постоянная верификация {key} сохранена только в памяти")

        try:
            await self.platform.send_message(
                key.user_id,
                "🏅 <b>Верификация завершена</b>\n\n"
                "Спасибо за сообщение! Теперь вы постоянный участник группы, "
                "повторная проверка не потребуется."
            )
        except Exception as e:
            logger.debug(f"Не удалось уведомить {key.user_id} о постоянной верификации: {e}")
        return True
