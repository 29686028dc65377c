"""Общие заглушки для тестов: управляемые часы, фейковый Telegram, настройки."""
import asyncio
from typing import List, Optional, Set

from aiogram.types import User

from config.settings import Settings
from gatebot.services.platform import PermissionEncoding

START_TIME = 1_700_000_000.0
GROUP_ID = -1001234567890
GROUP_TITLE = "Test Group"
BOT_USERNAME = "gate_test_bot"


class FakeClock:
    """Часы, которые двигаются только вручную."""

    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StaticGenerator:
    def __init__(self, *codes: str):
        self.codes = list(codes)

    def generate(self) -> str:
        if len(self.codes) > 1:
            return self.codes.pop(0)
        return self.codes[0]


class FakePlatform:
    """
    Записывает все обращения к Telegram.

    Отказы настраиваются атрибутами: имена наборов прав, которые отклоняются,
    количество первых вызовов снятия ограничений, которые падают, задержка
    ответа и пользователи, закрывшие личные сообщения.
    """

    def __init__(self):
        self.calls: List[tuple] = []
        self.messages: List[tuple] = []
        self.restrict_failures: Set[str] = set()
        self.unrestrict_failures: Set[str] = set()
        self.unrestrict_fail_first: int = 0
        self.unrestrict_delay: float = 0
        self.unrestrict_calls = 0
        self.dm_blocked: Set[int] = set()
        self.ban_fails = False
        self.unban_fails = False

    async def restrict_member(self, chat_id: int, user_id: int, encoding: PermissionEncoding) -> bool:
        self.calls.append(("restrict", chat_id, user_id, encoding.name))
        if encoding.name in self.restrict_failures:
            raise RuntimeError(f"encoding {encoding.name} rejected")
        return True

    async def unrestrict_member(self, chat_id: int, user_id: int, encoding: PermissionEncoding) -> bool:
        self.unrestrict_calls += 1
        call_number = self.unrestrict_calls
        self.calls.append(("unrestrict", chat_id, user_id, encoding.name))
        if self.unrestrict_delay:
            await asyncio.sleep(self.unrestrict_delay)
        if call_number <= self.unrestrict_fail_first or encoding.name in self.unrestrict_failures:
            raise RuntimeError(f"encoding {encoding.name} rejected")
        return True

    async def send_message(self, chat_id: int, text: str, reply_markup=None):
        if chat_id in self.dm_blocked:
            raise RuntimeError("Forbidden: bot can't initiate conversation with a user")
        self.messages.append((chat_id, text, reply_markup))

    async def ban_member(self, chat_id: int, user_id: int) -> bool:
        self.calls.append(("ban", chat_id, user_id))
        if self.ban_fails:
            raise RuntimeError("not enough rights to ban")
        return True

    async def unban_member(self, chat_id: int, user_id: int) -> bool:
        self.calls.append(("unban", chat_id, user_id))
        if self.unban_fails:
            raise RuntimeError("not enough rights to unban")
        return True

    async def get_chat_title(self, chat_id: int) -> Optional[str]:
        return GROUP_TITLE

    async def get_bot_username(self) -> str:
        return BOT_USERNAME

    def calls_of(self, kind: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == kind]

    def messages_to(self, chat_id: int) -> List[str]:
        return [text for target, text, _ in self.messages if target == chat_id]


def make_settings(**overrides) -> Settings:
    values = dict(
        bot_token="123456:test-token",
        unrestrict_retry_delay=0,
        unrestrict_timeout=1.0,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_user(user_id: int = 42, first_name: str = "Alex", is_bot: bool = False) -> User:
    return User(id=user_id, is_bot=is_bot, first_name=first_name)
