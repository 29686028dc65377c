"""
Репозиторий для хранения выданных капч.
"""
from typing import List, Optional

from .base import BaseRepository, to_db_timestamp
from ..models.challenge import ChallengeRecord
from ..models.key import VerificationKey


class ChallengeRepository(BaseRepository):
    """
    Операции над таблицей captchas.

    На одну пару (user_id, chat_id) хранится не больше одной капчи:
    перед вставкой старая запись удаляется.
    """

    async def replace(self, record: ChallengeRecord) -> ChallengeRecord:
        """
        Сохраняет капчу, удаляя предыдущую для того же ключа.

        Возвращает сохраненную запись с заполненным id.
        """
        await self.delete_by_key(record.key)
        sql = """
            INSERT OR REPLACE INTO captchas (user_id, chat_id, code, attempts, created_at)
            VALUES (?, ?, ?, ?, ?)
        """
        async with self.conn.execute(
            sql,
            (
                record.user_id,
                record.chat_id,
                record.code,
                record.attempts,
                to_db_timestamp(record.created_at),
            ),
        ) as cursor:
            record_id = cursor.lastrowid
        await self.conn.commit()
        return record.model_copy(update={"id": record_id})

    async def get_by_key(self, key: VerificationKey) -> Optional[ChallengeRecord]:
        """Получает капчу пользователя в конкретной группе."""
        sql = "SELECT * FROM captchas WHERE user_id = ? AND chat_id = ?"
        row = await self.fetchone(sql, (key.user_id, key.chat_id))
        return ChallengeRecord(**row) if row else None

    async def get_by_user(self, user_id: int) -> List[ChallengeRecord]:
        """Все капчи пользователя во всех группах, новые первыми."""
        sql = "SELECT * FROM captchas WHERE user_id = ? ORDER BY created_at DESC, id DESC"
        rows = await self.fetchall(sql, (user_id,))
        return [ChallengeRecord(**row) for row in rows]

    async def increment_attempts(self, record_id: int) -> Optional[int]:
        """Увеличивает счетчик попыток на 1. Возвращает новое значение."""
        await self.execute("UPDATE captchas SET attempts = attempts + 1 WHERE id = ?", (record_id,))
        row = await self.fetchone("SELECT attempts FROM captchas WHERE id = ?", (record_id,))
        return row["attempts"] if row else None

    async def delete_by_key(self, key: VerificationKey) -> int:
        sql = "DELETE FROM captchas WHERE user_id = ? AND chat_id = ?"
        return await self.execute(sql, (key.user_id, key.chat_id))

    async def delete_by_id(self, record_id: int) -> int:
        return await self.execute("DELETE FROM captchas WHERE id = ?", (record_id,))
