"""Настройки конфигурации для бота-капчи."""
from typing import Annotated, List, Optional
from pydantic import Field, field_validator, SecretStr
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Основные настройки приложения."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # 1. Настройки Telegram
    bot_token: SecretStr = Field(..., description="Токен Telegram бота")
    admin_user_ids: Annotated[List[int], NoDecode] = Field(
        default=[],
        description="ID глобальных администраторов бота (через запятую в .env)"
    )

    # 2. Настройки капчи
    captcha_length: int = Field(default=6, description="Длина кода капчи")
    max_captcha_attempts: int = Field(
        default=3,
        description="Количество неверных попыток до исключения из группы"
    )
    grace_period_seconds: int = Field(
        default=60,
        description="Окно после верификации, в котором сообщение делает верификацию постоянной"
    )

    # 3. Снятие ограничений
    unrestrict_max_retries: int = Field(default=3, description="Повторы снятия ограничений")
    unrestrict_retry_delay: float = Field(default=1.0, description="Пауза между повторами (сек)")
    unrestrict_timeout: float = Field(
        default=8.0,
        description="Таймаут одной попытки снятия ограничений (сек)"
    )

    # 4. Время жизни флагов в памяти (сек)
    processing_ttl: int = Field(default=120)
    restricting_ttl: int = Field(default=30)
    unrestricting_ttl: int = Field(default=30)
    restricted_by_us_ttl: int = Field(default=10 * 60)
    unrestricted_by_us_ttl: int = Field(default=24 * 60 * 60)
    verified_recent_ttl: int = Field(default=24 * 60 * 60)
    memory_fallback_ttl: int = Field(default=7 * 24 * 60 * 60)
    permanent_ttl: int = Field(default=30 * 24 * 60 * 60)
    pending_challenge_ttl: int = Field(default=60 * 60)

    # 5. Настройки базы данных
    database_path: str = Field(
        default="database.db",
        description="Путь к файлу SQLite"
    )

    # 6. Webhook (если не задан webhook_url, бот работает через polling)
    webhook_url: Optional[str] = Field(default=None, description="Публичный URL webhook")
    webhook_path: str = Field(default="/api/telegram-bot")
    webhook_secret: Optional[SecretStr] = Field(default=None)
    webapp_host: str = Field(default="0.0.0.0")
    webapp_port: int = Field(default=8080)

    # 7. Прочее
    message_footer: Optional[str] = Field(
        default=None,
        description="Строка, добавляемая в конец сообщений бота"
    )
    log_level: str = Field(default="DEBUG")
    log_file: str = Field(default="bot.log")

    # Валидаторы
    @field_validator('admin_user_ids', mode='before')
    def parse_ids(cls, value):
        if isinstance(value, str):
            return [int(x.strip()) for x in value.split(',') if x.strip()]
        if isinstance(value, int):
            return [value]
        return value

    # Методы для удобства
    def get_bot_token(self) -> str:
        """Получить токен бота в виде строки."""
        return self.bot_token.get_secret_value()

    def get_webhook_secret(self) -> Optional[str]:
        if self.webhook_secret is None:
            return None
        return self.webhook_secret.get_secret_value() or None

    @property
    def use_webhook(self) -> bool:
        return bool(self.webhook_url)

    def format_grace_period(self) -> str:
        """Окно grace-периода в родительном падеже: "в течение 1 минуты"."""
        seconds = self.grace_period_seconds
        if seconds >= 60 and seconds % 60 == 0:
            minutes = seconds // 60
            return f"{minutes} {_plural_minutes(minutes)}"
        return f"{seconds} {_plural_seconds(seconds)}"


def _plural_minutes(n: int) -> str:
    """Склонение для минут (родительный падеж)."""
    if n % 10 == 1 and n % 100 != 11:
        return "минуты"
    return "минут"


def _plural_seconds(n: int) -> str:
    """Склонение для секунд (родительный падеж)."""
    if n % 10 == 1 and n % 100 != 11:
        return "секунды"
    return "секунд"
