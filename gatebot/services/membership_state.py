"""
Состояние участников в памяти процесса.

Набор флагов с собственным временем жизни для каждой пары (user_id, chat_id).
Флаги не сохраняются между перезапусками: они лишь гасят повторную доставку
событий Telegram и подстраховывают бота, когда база данных недоступна.
"""
import asyncio
import itertools
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Optional, Tuple

from loguru import logger

from config.settings import Settings
from gatebot.database.models.key import VerificationKey

Clock = Callable[[], float]


@dataclass
class _Entry:
    value: Any
    expires_at: float
    generation: int


class ExpiringFlag:
    """
    Словарь ключ -> значение, где каждая запись живет ttl секунд.

    Каждый mark планирует удаление записи через ttl. Удаление ничего не делает,
    если после него для того же ключа был более новый mark.
    """

    _generations = itertools.count(1)

    def __init__(self, name: str, ttl: float, clock: Clock = time.time):
        self.name = name
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[VerificationKey, _Entry] = {}

    def mark(self, key: VerificationKey, value: Any = True, ttl: Optional[float] = None) -> int:
        """Устанавливает флаг. Возвращает номер поколения записи."""
        ttl = self.ttl if ttl is None else ttl
        generation = next(self._generations)
        self._entries[key] = _Entry(value, self._clock() + ttl, generation)
        self._schedule_expiry(key, generation, ttl)
        return generation

    def get(self, key: VerificationKey, default: Any = None) -> Any:
        entry = self._live_entry(key)
        return entry.value if entry else default

    def check(self, key: VerificationKey) -> bool:
        return self._live_entry(key) is not None

    def clear(self, key: VerificationKey) -> None:
        self._entries.pop(key, None)

    def items(self) -> Iterator[Tuple[VerificationKey, Any]]:
        """Живые записи флага."""
        for key in list(self._entries):
            entry = self._live_entry(key)
            if entry:
                yield key, entry.value

    def expires_in(self, key: VerificationKey) -> Optional[float]:
        entry = self._live_entry(key)
        return entry.expires_at - self._clock() if entry else None

    def _live_entry(self, key: VerificationKey) -> Optional[_Entry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            self._expire(key, entry.generation)
            return None
        return entry

    def _expire(self, key: VerificationKey, generation: int) -> None:
        entry = self._entries.get(key)
        if entry is not None and entry.generation == generation:
            del self._entries[key]
            logger.trace(f"⌛ Флаг {self.name} истек для {key}")

    def _schedule_expiry(self, key: VerificationKey, generation: int, ttl: float) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Вне event loop записи удаляются лениво при чтении
            return
        loop.call_later(ttl, self._expire, key, generation)


class AdvisoryLock(ExpiringFlag):
    """
    Неблокирующая блокировка на ключ с TTL на случай зависшего обработчика.

    Это проверка-и-установка, а не атомарный мьютекс: гонка двух событий,
    пришедших одновременно, теоретически возможна.
    """

    def try_acquire(self, key: VerificationKey) -> Optional[int]:
        """Захватывает блокировку. Возвращает токен или None, если она уже занята."""
        if self.check(key):
            return None
        return self.mark(key)

    def release(self, key: VerificationKey, token: int) -> None:
        """Освобождает блокировку, только если она все еще принадлежит владельцу токена."""
        entry = self._entries.get(key)
        if entry is not None and entry.generation == token:
            del self._entries[key]

    @contextmanager
    def hold(self, key: VerificationKey) -> Iterator[bool]:
        """Контекст, гарантирующий освобождение блокировки при любом выходе."""
        token = self.try_acquire(key)
        try:
            yield token is not None
        finally:
            if token is not None:
                self.release(key, token)


class MembershipStateStore:
    """Все флаги состояния участников, по одному ExpiringFlag на флаг."""

    def __init__(self, settings: Settings, clock: Clock = time.time):
        self.clock = clock
        self.grace_period = settings.grace_period_seconds

        self.processing = AdvisoryLock("processing", settings.processing_ttl, clock)
        self.restricting = AdvisoryLock("restricting", settings.restricting_ttl, clock)
        self.unrestricting = AdvisoryLock("unrestricting", settings.unrestricting_ttl, clock)

        self.restricted_by_us = ExpiringFlag("restricted_by_us", settings.restricted_by_us_ttl, clock)
        self.unrestricted_by_us = ExpiringFlag("unrestricted_by_us", settings.unrestricted_by_us_ttl, clock)
        self.verified_recent = ExpiringFlag("verified_recent", settings.verified_recent_ttl, clock)
        self.verified_memory_fallback = ExpiringFlag(
            "verified_memory_fallback", settings.memory_fallback_ttl, clock
        )
        # Значение - время начала grace-периода
        self.grace = ExpiringFlag("grace", settings.grace_period_seconds, clock)
        self.permanently_verified = ExpiringFlag("permanently_verified", settings.permanent_ttl, clock)
        # Значение - ChallengeRecord, копия капчи из БД
        self.pending_challenge = ExpiringFlag("pending_challenge", settings.pending_challenge_ttl, clock)

        self._flags: Dict[str, ExpiringFlag] = {
            flag.name: flag
            for flag in (
                self.processing,
                self.restricting,
                self.unrestricting,
                self.restricted_by_us,
                self.unrestricted_by_us,
                self.verified_recent,
                self.verified_memory_fallback,
                self.grace,
                self.permanently_verified,
                self.pending_challenge,
            )
        }

    def flag(self, name: str) -> ExpiringFlag:
        return self._flags[name]

    def mark(self, name: str, key: VerificationKey, value: Any = True, ttl: Optional[float] = None) -> int:
        return self.flag(name).mark(key, value, ttl)

    def check(self, name: str, key: VerificationKey) -> bool:
        return self.flag(name).check(key)

    def clear(self, name: str, key: VerificationKey) -> None:
        self.flag(name).clear(key)

    def is_permanent(self, key: VerificationKey) -> bool:
        return self.permanently_verified.check(key)

    def is_in_grace(self, key: VerificationKey) -> bool:
        return self.grace.check(key)

    def is_cleared(self, key: VerificationKey) -> bool:
        """Любой флаг верификации запрещает ограничивать пользователя."""
        return (
            self.permanently_verified.check(key)
            or self.grace.check(key)
            or self.verified_recent.check(key)
            or self.unrestricted_by_us.check(key)
            or self.verified_memory_fallback.check(key)
        )

    def mark_verified(self, key: VerificationKey) -> None:
        """Отмечает пользователя верифицированным и (пере)запускает grace-период."""
        self.verified_recent.mark(key)
        self.unrestricted_by_us.mark(key)
        self.grace.mark(key, value=self.clock())

    def promote(self, key: VerificationKey) -> None:
        self.permanently_verified.mark(key)
        self.grace.clear(key)

    def snapshot(self, key: VerificationKey) -> Dict[str, Any]:
        """Текущие значения всех флагов для отладки."""
        result = {}
        for name, flag in self._flags.items():
            if flag.check(key):
                result[name] = flag.get(key)
        return result
