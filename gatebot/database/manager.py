from pathlib import Path
from typing import Optional

from loguru import logger
import aiosqlite

from gatebot.database.repositories.challenge_repository import ChallengeRepository
from gatebot.database.repositories.verification_repository import VerificationRepository

SQL_DIR = Path(__file__).parent / "sql"


class DatabaseManager:
    """
    Соединение с SQLite и репозитории капч и верификаций.

    Схема создается скриптами из gatebot/database/sql при каждом запуске,
    поэтому все скрипты идемпотентны (CREATE ... IF NOT EXISTS).
    Путь ":memory:" дает временную базу, которая живет до close().
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.conn: Optional[aiosqlite.Connection] = None
        self.challenges: Optional[ChallengeRepository] = None
        self.verifications: Optional[VerificationRepository] = None

    async def init_database(self) -> None:
        """Открывает соединение, применяет схему и создает репозитории."""
        self.conn = await aiosqlite.connect(self.db_path)
        self.conn.row_factory = aiosqlite.Row
        # Запись из параллельных обработчиков ждет освобождения файла, а не падает сразу
        await self.conn.execute("PRAGMA busy_timeout = 5000")
        await self._apply_schema()

        self.challenges = ChallengeRepository(self.conn)
        self.verifications = VerificationRepository(self.conn)
        logger.info(f"🗄️ База данных {self.db_path} готова")

    async def _apply_schema(self) -> None:
        scripts = sorted(SQL_DIR.glob("*.sql"))
        for script_path in scripts:
            try:
                await self.conn.executescript(script_path.read_text(encoding="utf-8"))
            except Exception as e:
                logger.error(f"❌ Ошибка выполнения SQL-скрипта {script_path.name}: {e}")
                raise
        logger.debug(f"Схема БД применена: {len(scripts)} SQL-скриптов")

    async def close(self) -> None:
        """Закрывает соединение. Повторный вызов ничего не делает."""
        if self.conn is None:
            return
        await self.conn.close()
        self.conn = None
        logger.info("Соединение с базой данных закрыто")
