from datetime import timedelta
from celery import Task, shared_task
from celery.utils.log import get_task_logger

from .config import settings
from .outbound import DELIVER_EMAIL_TASK, TRANSIENT_SMTP_ERRORS, SmtpTransport
from .runner import build_scanner, record_delivery_failure, release_stale_claims, resolve_digest_job, run_scan

logger = get_task_logger(__name__)


class EmailDeliveryTask(Task):
    """Closes the reminder once a queued email has failed for good (permanent error or retries spent)."""

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        message = (args[0] if args else kwargs.get("message")) or {}
        reminder_id = message.get("reminder_id")
        if not reminder_id:
            logger.error(f"❌ [Outbound] Email task {task_id} failed without a reminder id: {exc!r}")
            return
        scanner = build_scanner(settings)
        record_delivery_failure(scanner.store, scanner.notifier, reminder_id, f"email delivery failed: {exc!r}")


@shared_task(name="reminders.scan_and_dispatch")
def scan_and_dispatch_task() -> dict:
    """Run one scan cycle. Returns the cycle summary."""
    scanner = build_scanner(settings)
    return run_scan(scanner).to_dict()


@shared_task(
    base=EmailDeliveryTask,
    name=DELIVER_EMAIL_TASK,
    autoretry_for=TRANSIENT_SMTP_ERRORS,
    retry_backoff=2,
    max_retries=5,
)
def deliver_email_task(message: dict) -> None:
    """Consume the delivery queue and hand the email to SMTP."""
    SmtpTransport.from_settings(settings).deliver(message)


@shared_task(name="reminders.release_stale_claims")
def release_stale_claims_task() -> int:
    scanner = build_scanner(settings)
    return release_stale_claims(scanner.store, scanner.clock, timedelta(minutes=settings.STALE_CLAIM_MINUTES))


@shared_task(name="reminders.weekly_digest")
def weekly_digest_task() -> None:
    job = resolve_digest_job(settings.DIGEST_JOB)
    if job is None:
        logger.info("No digest job configured; skipping weekly digest")
        return None
    job()
    return None
