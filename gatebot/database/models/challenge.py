"""
Модель капчи, выданной пользователю.
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from .key import VerificationKey


class ChallengeRecord(BaseModel):
    """
    Pydantic-модель капчи, соответствующая структуре в БД.

    Для одной пары (user_id, chat_id) существует не более одной записи.
    """
    id: Optional[int] = None
    user_id: int
    chat_id: int
    code: str
    attempts: int = 0
    created_at: datetime

    @property
    def key(self) -> VerificationKey:
        return VerificationKey(self.user_id, self.chat_id)

    def matches(self, text: Optional[str]) -> bool:
        """Сравнение с учетом регистра, пробелы по краям игнорируются."""
        if not text:
            return False
        return text.strip() == self.code
