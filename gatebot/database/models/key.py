"""
Составной ключ верификации.
"""
from typing import NamedTuple


class VerificationKey(NamedTuple):
    """Пара (пользователь, группа). Всё состояние бота привязано к этому ключу."""

    user_id: int
    chat_id: int

    def __str__(self) -> str:
        return f"{self.user_id}:{self.chat_id}"
