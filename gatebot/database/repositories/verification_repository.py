"""Репозиторий для записей о пройденной верификации."""

from datetime import datetime
from typing import Optional

from .base import BaseRepository, to_db_timestamp
from ..models.key import VerificationKey
from ..models.verification import VerificationRecord


class VerificationRepository(BaseRepository):
    """Операции над таблицей verified_users."""

    async def upsert(self, key: VerificationKey, verified_at: datetime) -> None:
        """
        Создает запись или обновляет verified_at.

        Флаг permanent при повторной верификации не сбрасывается.
        """
        sql = """
            INSERT INTO verified_users (user_id, chat_id, verified_at, permanent)
            VALUES (?, ?, ?, 0)
            ON CONFLICT(user_id, chat_id) DO UPDATE SET
                verified_at = excluded.verified_at
        """
        await self.execute(sql, (key.user_id, key.chat_id, to_db_timestamp(verified_at)))

    async def get_by_key(self, key: VerificationKey) -> Optional[VerificationRecord]:
        sql = "SELECT * FROM verified_users WHERE user_id = ? AND chat_id = ?"
        row = await self.fetchone(sql, (key.user_id, key.chat_id))
        return VerificationRecord(**row) if row else None

    async def get_verified_since(self, key: VerificationKey, since: datetime) -> Optional[VerificationRecord]:
        """Запись, если пользователь верифицировался не раньше since."""
        sql = """
            SELECT * FROM verified_users
            WHERE user_id = ? AND chat_id = ? AND verified_at >= ?
        """
        row = await self.fetchone(sql, (key.user_id, key.chat_id, to_db_timestamp(since)))
        return VerificationRecord(**row) if row else None

    async def mark_permanent(self, key: VerificationKey, verified_at: datetime) -> None:
        """Делает верификацию постоянной, создавая запись при необходимости."""
        sql = """
            INSERT INTO verified_users (user_id, chat_id, verified_at, permanent)
            VALUES (?, ?, ?, 1)
            ON CONFLICT(user_id, chat_id) DO UPDATE SET
                permanent = 1
        """
        await self.execute(sql, (key.user_id, key.chat_id, to_db_timestamp(verified_at)))
