"""Генератор кодов капчи."""
import random
import string
from typing import Optional

CAPTCHA_ALPHABET = string.ascii_uppercase + string.digits


class ChallengeGenerator:
    """
    Генерирует код из заглавных латинских букв и цифр.

    Источник случайности можно передать явно (например, random.Random(42) в тестах).
    """

    def __init__(self, length: int = 6, rng: Optional[random.Random] = None):
        self.length = length
        self._rng = rng or random.Random()

    def generate(self) -> str:
        return "".join(self._rng.choice(CAPTCHA_ALPHABET) for _ in range(self.length))
