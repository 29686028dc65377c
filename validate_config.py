#!/usr/bin/env python3
"""
Проверка конфигурации бота-капчи перед запуском.

Проверяет:
- что .env читается и проходит валидацию Settings
- что токен принимает Bot API (getMe)
- режим получения обновлений: webhook из настроек против текущего webhook бота
"""

import sys

import requests
from pydantic import ValidationError

from config.settings import Settings

API_URL = "https://api.telegram.org/bot{token}/{method}"


def call_api(token: str, method: str) -> dict:
    """Вызывает метод Bot API и возвращает поле result. Ошибки API поднимаются как RuntimeError."""
    response = requests.get(API_URL.format(token=token, method=method), timeout=10)
    if response.status_code == 401:
        raise RuntimeError("токен отклонен (401 Unauthorized)")
    data = response.json()
    if not data.get("ok"):
        raise RuntimeError(data.get("description", f"HTTP {response.status_code}"))
    return data["result"]


def load_settings():
    try:
        settings = Settings()
    except ValidationError as e:
        print("❌ Настройки не прошли проверку:")
        for error in e.errors():
            field = ".".join(str(part) for part in error["loc"]).upper()
            print(f"   {field}: {error['msg']}")
        return None

    print("✅ .env прочитан")
    print(f"   Глобальных администраторов: {len(settings.admin_user_ids)}")
    print(f"   Капча: {settings.captcha_length} символов, {settings.max_captcha_attempts} попытки")
    print(f"   Grace-период: в течение {settings.format_grace_period()}")
    return settings


def check_bot(settings: Settings) -> bool:
    try:
        me = call_api(settings.get_bot_token(), "getMe")
    except (requests.exceptions.RequestException, RuntimeError) as e:
        print(f"❌ Bot API недоступен: {e}")
        return False

    print(f"✅ Бот: @{me.get('username', 'unknown')}")
    if not me.get("can_join_groups", True):
        print("⚠️  Боту запрещено вступать в группы (настройка в BotFather)")
    return True


def check_update_mode(settings: Settings) -> bool:
    try:
        info = call_api(settings.get_bot_token(), "getWebhookInfo")
    except (requests.exceptions.RequestException, RuntimeError) as e:
        print(f"⚠️  Не удалось получить информацию о webhook: {e}")
        return True

    current = info.get("url") or ""
    if not settings.use_webhook:
        if current:
            print(f"ℹ️  Сейчас установлен webhook {current}, при запуске в режиме polling он будет удален")
        else:
            print("✅ Режим polling")
        return True

    if not settings.webhook_url.startswith("https://"):
        print("❌ WEBHOOK_URL должен начинаться с https://")
        return False

    expected = settings.webhook_url.rstrip("/") + settings.webhook_path
    print(f"✅ Режим webhook: {expected}")
    if current and current != expected:
        print(f"ℹ️  Сейчас установлен другой webhook ({current}), он будет заменен при запуске")
    if info.get("last_error_message"):
        print(f"⚠️  Последняя ошибка доставки: {info['last_error_message']}")
    return True


def main():
    print("🔍 Проверка конфигурации бота-капчи")
    print("=" * 50)

    settings = load_settings()
    if settings is None:
        sys.exit(1)

    checks = [check_bot(settings), check_update_mode(settings)]
    if not all(checks):
        print("\n❌ Проверка не пройдена, исправьте ошибки выше.")
        sys.exit(1)

    print("\n✅ Все проверки пройдены, бота можно запускать: python start.py")


if __name__ == "__main__":
    main()
