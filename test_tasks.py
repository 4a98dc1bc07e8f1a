"""
Tests for the Celery wiring
"""
from unittest.mock import MagicMock, patch
import smtplib

from reminder_service.reminders import tasks
from reminder_service.reminders.celery_app import celery_app
from reminder_service.reminders.scanner import CycleSummary


def test_beat_schedule():
    schedule = celery_app.conf.beat_schedule
    assert set(schedule) == {"scan-and-dispatch", "weekly-digest", "release-stale-claims"}
    assert schedule["scan-and-dispatch"]["task"] == tasks.scan_and_dispatch_task.name
    assert schedule["scan-and-dispatch"]["schedule"] == 300


def test_scan_task_returns_summary():
    with patch.object(tasks, "build_scanner"), patch.object(
        tasks, "run_scan", return_value=CycleSummary(claimed=2, sent=1, failed=1)
    ):
        result = tasks.scan_and_dispatch_task.run()

    assert result == {"claimed": 2, "sent": 1, "failed": 1, "skipped": 0, "aborted": False}


def test_deliver_email_task_hands_message_to_smtp():
    message = {"to": "owner@example.com", "subject": "s", "text": "t", "html": "h"}
    with patch.object(tasks.SmtpTransport, "from_settings") as from_settings:
        tasks.deliver_email_task.run(message)

    from_settings.return_value.deliver.assert_called_once_with(message)


def test_weekly_digest_runs_configured_job():
    job = MagicMock()
    with patch.object(tasks, "resolve_digest_job", return_value=job):
        tasks.weekly_digest_task.run()
    job.assert_called_once_with()


def test_weekly_digest_without_job_is_noop():
    with patch.object(tasks, "resolve_digest_job", return_value=None):
        assert tasks.weekly_digest_task.run() is None


def test_delivery_retries_only_transient_smtp_errors():
    retried = tuple(tasks.deliver_email_task.autoretry_for)

    assert isinstance(smtplib.SMTPServerDisconnected("closed"), retried)
    assert isinstance(ConnectionRefusedError(), retried)
    assert not isinstance(smtplib.SMTPRecipientsRefused({"owner@example.com": (550, b"no mailbox")}), retried)
    assert not isinstance(smtplib.SMTPAuthenticationError(535, b"bad credentials"), retried)


def test_failed_delivery_closes_reminder_and_notifies_owner():
    message = {"to": "owner@example.com", "reminder_id": "r-1", "user_id": "user-1"}
    scanner = MagicMock()
    with patch.object(tasks, "build_scanner", return_value=scanner), patch.object(
        tasks, "record_delivery_failure"
    ) as record:
        tasks.deliver_email_task.on_failure(
            smtplib.SMTPRecipientsRefused({"owner@example.com": (550, b"no mailbox")}), "task-1", (message,), {}, None
        )

    record.assert_called_once()
    store, notifier, reminder_id, reason = record.call_args.args
    assert (store, notifier, reminder_id) == (scanner.store, scanner.notifier, "r-1")
    assert "SMTPRecipientsRefused" in reason


def test_failed_delivery_without_reminder_id_is_only_logged():
    with patch.object(tasks, "build_scanner") as build, patch.object(tasks, "record_delivery_failure") as record:
        tasks.deliver_email_task.on_failure(OSError("boom"), "task-2", ({"to": "owner@example.com"},), {}, None)

    build.assert_not_called()
    record.assert_not_called()
