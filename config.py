# config.py

import os

from dotenv import load_dotenv

load_dotenv()


def _int_env(name: str, default: int, minimum: int = None) -> int:
    raw = (os.getenv(name) or "").strip()
    try:
        value = int(raw) if raw else default
    except ValueError:
        value = default
    if minimum is not None and value < minimum:
        value = minimum
    return value


def _bool_env(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


BOT_TOKEN = (os.getenv("BOT_TOKEN") or "").strip()

# Telegram ID пользователей через запятую, которым разрешено планировать сообщения
AUTHORIZED_USER_IDS = {
    int(part) for part in (os.getenv("AUTHORIZED_USER_IDS") or "").split(",")
    if part.strip().lstrip("-").isdigit()
}

# Опорный часовой пояс для ввода дат и расчёта расписаний
TIMEZONE = (os.getenv("TIMEZONE") or "UTC").strip() or "UTC"

DATABASE_PATH = (os.getenv("DATABASE_PATH") or "scheduler.db").strip() or "scheduler.db"

WEB_API_SECRET = (os.getenv("WEB_API_SECRET") or "").strip()
ADMIN_SECRET = (os.getenv("ADMIN_SECRET") or "").strip()
WEB_API_ENABLED = _bool_env("WEB_API_ENABLED", True)
WEB_API_PORT = _int_env("PORT", 8081, minimum=1)

# Таймаут одного вызова отправки/обновления на платформе
DELIVERY_TIMEOUT_SECONDS = _int_env("DELIVERY_TIMEOUT_SECONDS", 30, minimum=1)

# Черновики формы удаляются после такого простоя
SESSION_TTL_SECONDS = _int_env("SESSION_TTL_SECONDS", 1800, minimum=60)

# Снимки отправленных опросов и их голоса удаляются через столько дней
SNAPSHOT_RETENTION_DAYS = _int_env("SNAPSHOT_RETENTION_DAYS", 30, minimum=1)

LOG_LEVEL = (os.getenv("LOG_LEVEL") or "INFO").strip().upper() or "INFO"
LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'
