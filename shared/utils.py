# shared/utils.py

import calendar
import datetime
import random
import re
import string
import time as _time
from typing import Optional, Tuple

import pytz
from telegram.helpers import escape_markdown

from config import TIMEZONE
from shared.errors import ValidationError
from shared.models import (
    ScheduledMessage, MessageType, Repeat, DEFAULT_CAPACITY_OPTIONS,
    MIN_POLL_OPTIONS, MAX_POLL_OPTIONS
)

_DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")
_USER_DT_RE = re.compile(r"^(\d{2})\.(\d{2})\.(\d{4})\s+(\d{1,2}):(\d{2})$")

WEEKDAY_NAMES = ('mon', 'tue', 'wed', 'thu', 'fri', 'sat', 'sun')


# === Время и часовой пояс ===

def get_timezone(name: Optional[str] = None):
    return pytz.timezone(name or TIMEZONE)


def now_local(tz=None) -> datetime.datetime:
    """Текущий момент в опорном часовом поясе."""
    tz = tz or get_timezone()
    return datetime.datetime.now(pytz.UTC).astimezone(tz)


def utc_now_iso() -> str:
    return datetime.datetime.now(pytz.UTC).isoformat()


def parse_date(value: str) -> datetime.date:
    match = _DATE_RE.match((value or "").strip())
    if not match:
        raise ValidationError(f"Неверная дата '{value}', нужен формат ГГГГ-ММ-ДД")
    try:
        return datetime.date(*map(int, match.groups()))
    except ValueError as e:
        raise ValidationError(f"Неверная дата '{value}': {e}")


def parse_time(value: str) -> Tuple[int, int]:
    match = _TIME_RE.match((value or "").strip())
    if not match:
        raise ValidationError(f"Неверное время '{value}', нужен формат ЧЧ:ММ")
    hour, minute = map(int, match.groups())
    if hour > 23 or minute > 59:
        raise ValidationError(f"Неверное время '{value}'")
    return hour, minute


def schedule_instant(date_str: str, time_str: str, tz=None) -> datetime.datetime:
    """Момент времени для пары (дата, время) в опорном часовом поясе."""
    tz = tz or get_timezone()
    day = parse_date(date_str)
    hour, minute = parse_time(time_str)
    naive = datetime.datetime(day.year, day.month, day.day, hour, minute)
    return tz.localize(naive)


def is_past(instant: datetime.datetime, now: Optional[datetime.datetime] = None) -> bool:
    now = now or now_local(instant.tzinfo)
    return instant <= now


def last_day_of_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def weekday_name(date_str: str) -> str:
    return WEEKDAY_NAMES[parse_date(date_str).weekday()]


def parse_user_datetime(text: str) -> Tuple[str, str]:
    """
    Принимает "ДД.ММ.ГГГГ ЧЧ:ММ" или "ГГГГ-ММ-ДД ЧЧ:ММ" и возвращает
    нормализованную пару ("YYYY-MM-DD", "HH:MM").
    """
    text = (text or "").strip()
    match = _USER_DT_RE.match(text)
    if match:
        day, month, year, hour, minute = map(int, match.groups())
        date_str = f"{year:04d}-{month:02d}-{day:02d}"
        time_str = f"{hour:02d}:{minute:02d}"
    else:
        parts = text.split()
        if len(parts) != 2:
            raise ValidationError("Формат: ДД.ММ.ГГГГ ЧЧ:ММ или ГГГГ-ММ-ДД ЧЧ:ММ")
        date_str, time_str = parts
    parse_date(date_str)
    hour, minute = parse_time(time_str)
    return date_str, f"{hour:02d}:{minute:02d}"


# === Идентификаторы и форматирование ===

def generate_message_id(prefix: str = 'm_') -> str:
    suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"{prefix}{int(_time.time() * 1000)}_{suffix}"


def escape_markdown_v2(text: str) -> str:
    return escape_markdown(text or "", version=2)


# === Валидация записей ===

def apply_defaults(msg: ScheduledMessage) -> ScheduledMessage:
    """Подставляет значения по умолчанию в зависимости от типа."""
    msg.channel = (msg.channel or "").strip()
    msg.poll_options = [o.strip() for o in msg.poll_options if o and o.strip()]
    msg.alert_channels = [c.strip() for c in msg.alert_channels if c and c.strip()]
    if msg.type == MessageType.CAPACITY and not msg.poll_options:
        msg.poll_options = list(DEFAULT_CAPACITY_OPTIONS)
    if msg.type not in MessageType.VOTABLE:
        msg.poll_options = []
    if msg.type != MessageType.HELP:
        msg.alert_channels = []
    return msg


def validate_message(
    msg: ScheduledMessage,
    now: Optional[datetime.datetime] = None,
    check_past: bool = True,
    tz=None
) -> None:
    """
    Бросает ValidationError, если запись нельзя сохранить или запланировать.
    check_past=False отключает проверку прошедшего времени (немедленная отправка).
    """
    if msg.type not in MessageType.ALL:
        raise ValidationError(f"Неизвестный тип сообщения '{msg.type}'")
    if msg.repeat not in Repeat.ALL:
        raise ValidationError(f"Неизвестная периодичность '{msg.repeat}'")
    if not (msg.channel or "").strip():
        raise ValidationError("Не указан канал для отправки")

    if msg.type in MessageType.VOTABLE:
        count = len(msg.poll_options)
        if count < MIN_POLL_OPTIONS or count > MAX_POLL_OPTIONS:
            raise ValidationError(
                f"В опросе должно быть {MIN_POLL_OPTIONS}-{MAX_POLL_OPTIONS} вариантов, получено {count}"
            )
    if msg.type in MessageType.POLL_LIKE and not (msg.text or "").strip():
        raise ValidationError("У опроса нет вопроса")
    if msg.type == MessageType.HELP and not msg.alert_channels:
        raise ValidationError("Для запроса помощи нужен хотя бы один канал оповещений")
    if msg.type == MessageType.CUSTOM and not ((msg.text or "").strip() or (msg.title or "").strip()):
        raise ValidationError("Сообщение пустое")

    instant = schedule_instant(msg.date, msg.time, tz)
    if check_past and msg.repeat == Repeat.NONE and is_past(instant, now):
        raise ValidationError(f"Время {msg.date} {msg.time} уже прошло")
