"""Общие фикстуры: хранилище во временной папке и фейковый Messenger."""
import asyncio
import datetime

import pytest
import pytz
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from scheduler_logic import SchedulerCore
from shared.database import MessageStore
from shared.messaging import Messenger
from shared.models import SendResult, ScheduledMessage
from shared.sessions import SessionStore


class FakeMessenger(Messenger):
    def __init__(self):
        self.sent = []
        self.updates = []
        self.notices = []
        self.fail_channels = set()
        self.inaccessible = set()
        self.send_delay = 0
        self._counter = 0

    async def send_message(self, channel, payload):
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if channel in self.fail_channels:
            return SendResult(ok=False, error="chat not found")
        self._counter += 1
        self.sent.append((channel, payload))
        return SendResult(ok=True, message_ref=str(self._counter))

    async def update_message(self, channel, message_ref, payload):
        self.updates.append((channel, message_ref, payload))
        return SendResult(ok=True, message_ref=message_ref)

    async def verify_channel_accessible(self, channel):
        return channel not in self.inaccessible

    async def notify(self, actor_id, text):
        self.notices.append((actor_id, text))
        return SendResult(ok=True)


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "scheduler.db")


@pytest.fixture
def store(db_path):
    return MessageStore(db_path)


@pytest.fixture
def messenger():
    return FakeMessenger()


@pytest.fixture
def core(store, messenger):
    return SchedulerCore(
        store,
        messenger,
        sessions=SessionStore(ttl_s=600),
        scheduler=AsyncIOScheduler(timezone=pytz.UTC),
        tz=pytz.UTC,
        timeout=2,
    )


def in_minutes(minutes: int) -> datetime.datetime:
    return datetime.datetime.now(pytz.UTC) + datetime.timedelta(minutes=minutes)


def make_message(msg_id="m_1", **fields) -> ScheduledMessage:
    when = in_minutes(2)
    data = {
        "id": msg_id,
        "type": "custom",
        "channel": "C1",
        "date": when.strftime("%Y-%m-%d"),
        "time": when.strftime("%H:%M"),
        "text": "Привет",
    }
    data.update(fields)
    return ScheduledMessage(**data)
