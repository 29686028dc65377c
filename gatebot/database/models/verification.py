"""Модель записи о прохождении верификации."""

from datetime import datetime
from pydantic import BaseModel


class VerificationRecord(BaseModel):
    """Статус верификации пользователя в конкретной группе."""

    user_id: int
    chat_id: int
    verified_at: datetime
    permanent: bool = False  # True после сообщения в группе в течение grace-периода
