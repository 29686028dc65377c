"""Базовый класс для всех репозиториев."""

from datetime import datetime

import aiosqlite


class BaseRepository:
    """Базовый класс репозитория."""

    def __init__(self, conn: aiosqlite.Connection):
        """
        Инициализация репозитория.

        :param conn: Соединение с базой данных.
        """
        self.conn = conn

    async def execute(self, query: str, parameters=None) -> int:
        """Выполнение SQL запроса. Возвращает количество затронутых строк."""
        if parameters is None:
            parameters = ()
        async with self.conn.execute(query, parameters) as cursor:
            await self.conn.commit()
            return cursor.rowcount

    async def fetchone(self, query: str, parameters=None):
        """Выполнение SQL запроса и получение одной записи."""
        if parameters is None:
            parameters = ()
        async with self.conn.execute(query, parameters) as cursor:
            return await cursor.fetchone()

    async def fetchall(self, query: str, parameters=None):
        """Выполнение SQL запроса и получение всех записей."""
        if parameters is None:
            parameters = ()
        async with self.conn.execute(query, parameters) as cursor:
            return await cursor.fetchall()


def to_db_timestamp(value: datetime) -> str:
    """ISO-8601 с микросекундами, чтобы строки сравнивались лексикографически."""
    return value.isoformat(timespec="microseconds")
