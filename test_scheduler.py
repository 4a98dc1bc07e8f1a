"""
Tests for the in-process scheduler and the runner wiring
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock
import threading
import time

import pytest

from conftest import T0, RecordingSender
from reminder_service.reminders.config import ReminderSettings
from reminder_service.reminders.runner import (
    build_scanner,
    build_scheduler,
    record_delivery_failure,
    release_stale_claims,
    resolve_digest_job,
)
from reminder_service.reminders.scheduler import IntervalTrigger, Scheduler, WeeklyTrigger
from reminder_service.reminders.schemas import Channel, DispatchState


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class TestTriggers:
    def test_interval(self):
        assert IntervalTrigger(timedelta(minutes=5)).next_fire(T0) == T0 + timedelta(minutes=5)

    def test_interval_must_be_positive(self):
        with pytest.raises(ValueError):
            IntervalTrigger(timedelta(0))

    def test_weekly_monday_nine_utc(self):
        trigger = WeeklyTrigger(day_of_week=1, hour_utc=9)
        # 2024-03-01 is a Friday
        assert trigger.next_fire(T0) == datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)
        assert trigger.next_fire(datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)) == datetime(
            2024, 3, 11, 9, 0, tzinfo=timezone.utc
        )

    def test_weekly_sunday_is_zero(self):
        assert WeeklyTrigger(0, 0).next_fire(T0) == datetime(2024, 3, 3, 0, 0, tzinfo=timezone.utc)

    def test_weekly_rejects_bad_values(self):
        with pytest.raises(ValueError):
            WeeklyTrigger(7, 9)
        with pytest.raises(ValueError):
            WeeklyTrigger(1, 24)


class TestScheduler:
    def test_runs_job_on_interval_until_stopped(self):
        calls = []
        scheduler = Scheduler()
        job = scheduler.add_job("tick", IntervalTrigger(timedelta(milliseconds=20)), lambda: calls.append(1))

        scheduler.start()
        assert wait_until(lambda: len(calls) >= 3)
        scheduler.stop(timeout=1, wait_for_runs=True)

        assert scheduler.running is False
        seen = len(calls)
        time.sleep(0.1)
        assert len(calls) == seen
        assert job.launches == seen

    def test_slow_run_does_not_block_next_tick(self):
        release = threading.Event()
        active = []
        lock = threading.Lock()
        peak = [0]

        def slow():
            with lock:
                active.append(1)
                peak[0] = max(peak[0], len(active))
            release.wait(5)
            with lock:
                active.pop()

        scheduler = Scheduler()
        scheduler.add_job("slow", IntervalTrigger(timedelta(milliseconds=20)), slow)
        scheduler.start()
        try:
            assert wait_until(lambda: peak[0] >= 2)
        finally:
            scheduler.stop(timeout=1)
            release.set()

    def test_failing_job_keeps_ticking(self):
        job_calls = []

        def flaky():
            job_calls.append(1)
            raise RuntimeError("store down")

        scheduler = Scheduler()
        scheduler.add_job("flaky", IntervalTrigger(timedelta(milliseconds=20)), flaky)
        scheduler.start()
        try:
            assert wait_until(lambda: len(job_calls) >= 2)
        finally:
            scheduler.stop(timeout=1)

    def test_cannot_add_jobs_while_running(self):
        scheduler = Scheduler()
        scheduler.add_job("tick", IntervalTrigger(timedelta(hours=1)), lambda: None)
        scheduler.start()
        try:
            with pytest.raises(RuntimeError):
                scheduler.add_job("late", IntervalTrigger(timedelta(hours=1)), lambda: None)
        finally:
            scheduler.stop(timeout=1)


class TestRunner:
    def test_build_scheduler_jobs(self, store, clock):
        settings = ReminderSettings(SCAN_INTERVAL_MINUTES=5, DIGEST_DAY_OF_WEEK=1, DIGEST_HOUR_UTC=9)
        scanner = build_scanner(
            settings, store.session_factory, clock=clock, senders={Channel.EMAIL: RecordingSender()}
        )

        scheduler = build_scheduler(scanner, settings, digest_job=lambda: None)

        assert [j.name for j in scheduler.jobs] == ["reminder-scan", "weekly-digest", "release-stale-claims"]
        scan, digest, _ = scheduler.jobs
        assert scan.trigger.interval == timedelta(minutes=5)
        assert digest.trigger.expression == "0 9 * * 1"

    def test_no_digest_job_without_callable(self, store, clock):
        scanner = build_scanner(
            ReminderSettings(), store.session_factory, clock=clock, senders={Channel.EMAIL: RecordingSender()}
        )

        names = [j.name for j in build_scheduler(scanner, ReminderSettings()).jobs]

        assert "weekly-digest" not in names

    def test_scan_job_dispatches_due_reminders(self, store, clock, make_reminder):
        reminder = make_reminder()
        sender = RecordingSender()
        scanner = build_scanner(
            ReminderSettings(WORKER_CONCURRENCY=1), store.session_factory, clock=clock, senders={Channel.EMAIL: sender}
        )

        scheduler = build_scheduler(scanner, ReminderSettings())
        scheduler.jobs[0].func()

        assert len(sender.calls) == 1
        assert store.get_reminder(reminder.id).dispatch_state is DispatchState.SENT

    def test_release_stale_claims_uses_max_age(self, clock):
        store = MagicMock()
        store.release_stale_claims.return_value = 2

        assert release_stale_claims(store, clock, timedelta(minutes=30)) == 2
        store.release_stale_claims.assert_called_once_with(T0 - timedelta(minutes=30))

    def test_resolve_digest_job(self):
        assert resolve_digest_job(None) is None
        assert resolve_digest_job("time:monotonic") is time.monotonic

    def test_record_delivery_failure_closes_and_notifies(self, store, make_reminder):
        reminder = make_reminder(recurrence="weekly")
        notifier = MagicMock()

        closed = record_delivery_failure(store, notifier, reminder.id, "email delivery failed: recipient refused")

        assert closed.is_active is False
        assert closed.dispatch_state is DispatchState.FAILED
        notifier.notify_terminal_failure.assert_called_once_with(closed, "email delivery failed: recipient refused")

    def test_record_delivery_failure_for_missing_reminder(self, store):
        notifier = MagicMock()

        assert record_delivery_failure(store, notifier, "00000000-0000-4000-8000-000000000000", "x") is None
        notifier.notify_terminal_failure.assert_not_called()
