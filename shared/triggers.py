# shared/triggers.py

import datetime
from typing import Optional

from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from shared.models import ScheduledMessage, Repeat
from shared.utils import (
    get_timezone, parse_date, parse_time, schedule_instant,
    last_day_of_month, weekday_name
)


class MonthlyTrigger(BaseTrigger):
    """
    Срабатывает раз в месяц в заданный день и время.
    Если в месяце нет такого дня, срабатывает в последний день месяца.
    """

    __slots__ = 'day', 'hour', 'minute', 'timezone', 'start_date'

    def __init__(self, day: int, hour: int, minute: int, timezone,
                 start_date: Optional[datetime.datetime] = None):
        if not 1 <= day <= 31:
            raise ValueError(f"day must be within 1-31, got {day}")
        self.day = day
        self.hour = hour
        self.minute = minute
        self.timezone = timezone
        self.start_date = start_date

    def get_next_fire_time(self, previous_fire_time, now):
        if previous_fire_time is not None:
            start = previous_fire_time + datetime.timedelta(microseconds=1)
        elif self.start_date is not None and self.start_date > now:
            start = self.start_date
        else:
            start = now
        start = start.astimezone(self.timezone)

        year, month = start.year, start.month
        # Кандидат следующего месяца всегда впереди: двух итераций достаточно
        for _ in range(2):
            day = min(self.day, last_day_of_month(year, month))
            candidate = self.timezone.localize(
                datetime.datetime(year, month, day, self.hour, self.minute)
            )
            if candidate >= start:
                return candidate
            month += 1
            if month > 12:
                month = 1
                year += 1
        return None

    def __str__(self):
        return f"monthly[day='{self.day}', time='{self.hour:02d}:{self.minute:02d}']"

    def __repr__(self):
        return (f"<{self.__class__.__name__} (day={self.day}, hour={self.hour}, "
                f"minute={self.minute}, timezone='{self.timezone}')>")


def build_trigger(msg: ScheduledMessage, tz=None) -> BaseTrigger:
    """Строит триггер APScheduler по (date, time, repeat) записи."""
    tz = tz or get_timezone()
    anchor = schedule_instant(msg.date, msg.time, tz)
    hour, minute = parse_time(msg.time)

    if msg.repeat == Repeat.NONE:
        return DateTrigger(run_date=anchor, timezone=tz)
    if msg.repeat == Repeat.DAILY:
        return CronTrigger(hour=hour, minute=minute, start_date=anchor, timezone=tz)
    if msg.repeat == Repeat.WEEKLY:
        return CronTrigger(
            day_of_week=weekday_name(msg.date), hour=hour, minute=minute,
            start_date=anchor, timezone=tz
        )
    if msg.repeat == Repeat.MONTHLY:
        day = parse_date(msg.date).day
        return MonthlyTrigger(day=day, hour=hour, minute=minute, timezone=tz, start_date=anchor)
    raise ValueError(f"Unknown repeat rule '{msg.repeat}'")
