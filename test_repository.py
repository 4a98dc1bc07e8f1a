"""
Tests for the SQLAlchemy reminder store and its claim protocol
"""
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError
from sqlalchemy.exc import OperationalError

from conftest import T0, RecordingSender
from reminder_service.reminders.errors import StoreUnavailableError
from reminder_service.reminders.models import Reminder
from reminder_service.reminders.repository import SqlAlchemyReminderStore
from reminder_service.reminders.scanner import DueScanner
from reminder_service.reminders.schemas import (
    Channel,
    DispatchOutcome,
    DispatchState,
    Recurrence,
    ReminderCreate,
)


def test_create_reminder_defaults(make_reminder):
    created = make_reminder()
    assert created.is_active is True
    assert created.dispatch_state is DispatchState.PENDING
    assert created.attempt_count == 0
    assert created.next_fire_at == T0


def test_create_rejects_long_message():
    with pytest.raises(ValidationError):
        ReminderCreate(user_id="u", message="x" * 256, next_fire_at=T0)


def test_create_rejects_end_repeat_before_start():
    with pytest.raises(ValidationError):
        ReminderCreate(
            user_id="u",
            message="Weekly review",
            next_fire_at=T0,
            recurrence=Recurrence.WEEKLY,
            end_repeat=T0 - timedelta(days=1),
        )


def test_find_due_boundary_is_inclusive(store, make_reminder):
    on_time = make_reminder(next_fire_at=T0)
    make_reminder(next_fire_at=T0 + timedelta(minutes=1))

    due = store.find_due(T0)

    assert [r.id for r in due] == [on_time.id]


def test_find_due_orders_oldest_first_and_honours_limit(store, make_reminder):
    late = make_reminder(next_fire_at=T0 - timedelta(hours=1))
    older = make_reminder(next_fire_at=T0 - timedelta(days=2))
    make_reminder(next_fire_at=T0)

    due = store.find_due(T0, limit=2)

    assert [r.id for r in due] == [older.id, late.id]


def test_find_due_skips_claimed_and_inactive(store, make_reminder):
    claimed = make_reminder()
    finished = make_reminder()
    store.try_claim(claimed.id)
    store.try_claim(finished.id)
    store.apply_outcome(finished.id, DispatchOutcome.completed(T0))

    assert store.find_due(T0) == []


def add_raw_row(store, **columns):
    db = store.session_factory()
    row = Reminder(user_id="user-2", message="Raw row", **columns)
    db.add(row)
    db.commit()
    db.close()
    return row.id


def test_find_due_deactivates_malformed_rows(store, make_reminder):
    good = make_reminder()
    bad = add_raw_row(store, next_fire_at=T0, channel="pigeon")

    assert [r.id for r in store.find_due(T0)] == [good.id]

    stored = store.get_reminder(good.id)
    assert stored.is_active is True
    db = store.session_factory()
    row = db.get(Reminder, bad)
    assert row.is_active is False
    assert row.dispatch_state == DispatchState.FAILED.value
    db.close()


def test_malformed_rows_do_not_starve_the_batch(store, clock, make_reminder):
    add_raw_row(store, next_fire_at=T0 - timedelta(days=1), recurrence="fortnightly", channel="email")
    good = make_reminder(next_fire_at=T0)
    sender = RecordingSender()
    scanner = DueScanner(store=store, senders={Channel.EMAIL: sender}, clock=clock, batch_size=1, concurrency=1)

    summary = scanner.run_cycle(T0)

    assert summary.sent == 1
    assert [c.id for c in sender.calls] == [good.id]
    for n in range(1, 5):
        assert scanner.run_cycle(T0 + timedelta(minutes=5 * n)).processed == 0
    assert len(sender.calls) == 1


def test_deactivate_closes_reminder(store, make_reminder):
    reminder = make_reminder(recurrence=Recurrence.DAILY)

    closed = store.deactivate(reminder.id, "email delivery failed")

    assert closed.is_active is False
    assert closed.dispatch_state is DispatchState.FAILED
    assert closed.last_error == "email delivery failed"
    assert store.find_due(T0 + timedelta(days=5)) == []


def test_deactivate_unknown_reminder(store):
    assert store.deactivate("00000000-0000-4000-8000-000000000000", "gone") is None


def test_try_claim_is_exclusive(store, make_reminder):
    reminder = make_reminder()

    assert store.try_claim(reminder.id) is True
    assert store.try_claim(reminder.id) is False

    stored = store.get_reminder(reminder.id)
    assert stored.dispatch_state is DispatchState.CLAIMED
    assert stored.claimed_at is not None


def test_apply_outcome_retry_keeps_occurrence(store, make_reminder):
    reminder = make_reminder()
    store.try_claim(reminder.id)

    store.apply_outcome(reminder.id, DispatchOutcome.retry("smtp down"))

    stored = store.get_reminder(reminder.id)
    assert stored.dispatch_state is DispatchState.PENDING
    assert stored.is_active is True
    assert stored.next_fire_at == T0
    assert stored.attempt_count == 1
    assert stored.last_error == "smtp down"
    assert stored.claimed_at is None


def test_apply_outcome_advanced_moves_series_and_resets_attempts(store, make_reminder):
    reminder = make_reminder(recurrence=Recurrence.DAILY)
    store.try_claim(reminder.id)
    store.apply_outcome(reminder.id, DispatchOutcome.retry("timeout"))
    store.try_claim(reminder.id)

    store.apply_outcome(reminder.id, DispatchOutcome.advanced(T0 + timedelta(days=1), T0))

    stored = store.get_reminder(reminder.id)
    assert stored.next_fire_at == T0 + timedelta(days=1)
    assert stored.attempt_count == 0
    assert stored.last_sent_at == T0
    assert stored.last_error is None


def test_apply_outcome_without_claim_changes_nothing(store, make_reminder):
    reminder = make_reminder()

    store.apply_outcome(reminder.id, DispatchOutcome.completed(T0))

    stored = store.get_reminder(reminder.id)
    assert stored.is_active is True
    assert stored.dispatch_state is DispatchState.PENDING


def test_release_stale_claims(store, make_reminder):
    reminder = make_reminder()
    store.try_claim(reminder.id)

    # claimed_at uses the wall clock, so a cutoff in the past releases nothing
    assert store.release_stale_claims(T0 - timedelta(days=1)) == 0
    assert store.release_stale_claims(store.get_reminder(reminder.id).claimed_at + timedelta(seconds=1)) == 1

    stored = store.get_reminder(reminder.id)
    assert stored.dispatch_state is DispatchState.PENDING
    assert [r.id for r in store.find_due(T0)] == [reminder.id]


def test_store_errors_become_store_unavailable():
    session = MagicMock()
    session.execute.side_effect = OperationalError("SELECT 1", {}, Exception("connection refused"))
    store = SqlAlchemyReminderStore(lambda: session)

    with pytest.raises(StoreUnavailableError):
        store.find_due(T0)

    session.rollback.assert_called_once()
    session.close.assert_called_once()
