"""
Доступ к капчам и записям о верификации в БД.

Любая операция с базой может завершиться ошибкой. Ошибка логируется и
никогда не пробрасывается наверх: вызывающий код получает значение по
умолчанию и опирается на флаги в памяти.
"""
from datetime import datetime, timedelta, timezone
from typing import Awaitable, List, Optional, TypeVar

from loguru import logger

from gatebot.database.manager import DatabaseManager
from gatebot.database.models.challenge import ChallengeRecord
from gatebot.database.models.key import VerificationKey
from gatebot.database.models.verification import VerificationRecord
from gatebot.services.membership_state import Clock

T = TypeVar("T")


async def best_effort(operation: Awaitable[T], description: str, default: T = None) -> T:
    """
    Выполняет операцию с БД, возвращая default при любой ошибке.

    Args:
        operation: Корутина репозитория
        description: Описание операции для лога
        default: Результат при ошибке
    """
    try:
        return await operation
    except Exception as e:
        logger.warning(f"⚠️ БД недоступна ({description}): {e}")
        return default


class VerificationRecords:
    """Капчи и статусы верификации, хранящиеся в БД."""

    def __init__(self, db_manager: DatabaseManager, clock: Clock):
        self.db = db_manager
        self.clock = clock

    def now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc)

    # Капчи

    async def create_challenge(self, key: VerificationKey, code: str) -> Optional[ChallengeRecord]:
        """
        Сохраняет новую капчу, заменяя предыдущую для этого ключа.

        Возвращает None, если записать в БД не удалось.
        """
        record = ChallengeRecord(user_id=key.user_id, chat_id=key.chat_id, code=code, created_at=self.now())
        return await best_effort(self.db.challenges.replace(record), f"сохранение капчи {key}")

    async def get_challenge(self, key: VerificationKey) -> Optional[ChallengeRecord]:
        return await best_effort(self.db.challenges.get_by_key(key), f"чтение капчи {key}")

    async def challenges_for_user(self, user_id: int) -> Optional[List[ChallengeRecord]]:
        """Капчи пользователя во всех группах; None, если БД недоступна."""
        return await best_effort(self.db.challenges.get_by_user(user_id), f"капчи пользователя {user_id}")

    async def register_failed_attempt(self, record: ChallengeRecord) -> int:
        """
        Увеличивает счетчик попыток.

        Если БД недоступна или запись уже исчезла, счетчик считается локально.
        """
        attempts = None
        if record.id is not None:
            attempts = await best_effort(
                self.db.challenges.increment_attempts(record.id), f"попытка для капчи {record.key}"
            )
        return attempts if attempts is not None else record.attempts + 1

    async def delete_challenge(self, key: VerificationKey) -> bool:
        deleted = await best_effort(self.db.challenges.delete_by_key(key), f"удаление капчи {key}")
        return deleted is not None

    async def delete_challenge_by_id(self, record_id: int) -> bool:
        deleted = await best_effort(self.db.challenges.delete_by_id(record_id), f"удаление капчи #{record_id}")
        return deleted is not None

    # Верификация

    async def save_verification(self, key: VerificationKey) -> bool:
        """Записывает (или обновляет) факт верификации. False при ошибке БД."""
        return await best_effort(self._upsert(key), f"сохранение верификации {key}", default=False)

    async def _upsert(self, key: VerificationKey) -> bool:
        await self.db.verifications.upsert(key, self.now())
        return True

    async def get_verification(self, key: VerificationKey) -> Optional[VerificationRecord]:
        return await best_effort(self.db.verifications.get_by_key(key), f"чтение верификации {key}")

    async def is_verified(self, key: VerificationKey) -> bool:
        return await self.get_verification(key) is not None

    async def verified_within(self, key: VerificationKey, seconds: float) -> Optional[VerificationRecord]:
        """Запись о верификации не старше seconds."""
        since = self.now() - timedelta(seconds=seconds)
        return await best_effort(
            self.db.verifications.get_verified_since(key, since), f"недавняя верификация {key}"
        )

    async def mark_permanent(self, key: VerificationKey) -> bool:
        return await best_effort(self._mark_permanent(key), f"постоянная верификация {key}", default=False)

    async def _mark_permanent(self, key: VerificationKey) -> bool:
        await self.db.verifications.mark_permanent(key, self.now())
        return True
