from datetime import datetime, timezone
import threading

import pytest

from reminder_service.db.session import build_engine, build_session_factory
from reminder_service.reminders.channels import SendResult
from reminder_service.reminders.clock import FrozenClock
from reminder_service.reminders.repository import SqlAlchemyReminderStore
from reminder_service.reminders.runner import init_db
from reminder_service.reminders.schemas import Channel, ReminderCreate

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


class RecordingSender:
    """Channel sender that records calls and replays scripted results."""

    def __init__(self, channel: Channel = Channel.EMAIL, results=None):
        self.channel = channel
        self.results = list(results or [])
        self.calls = []
        self._lock = threading.Lock()

    def send(self, reminder):
        with self._lock:
            self.calls.append(reminder)
            result = self.results.pop(0) if self.results else SendResult.success()
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def store(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'reminders.db'}")
    init_db(engine)
    yield SqlAlchemyReminderStore(build_session_factory(engine))
    engine.dispose()


@pytest.fixture
def clock():
    return FrozenClock(T0)


@pytest.fixture
def make_reminder(store):
    def _make(**overrides):
        data = {
            "user_id": "user-1",
            "message": "Drink water",
            "next_fire_at": T0,
            "channel": Channel.EMAIL,
            "recipient": "owner@example.com",
        }
        data.update(overrides)
        return store.create_reminder(ReminderCreate(**data))

    return _make
