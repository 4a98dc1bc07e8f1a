"""
Process bootstrap for the reminder engine.

``build_scanner`` and ``build_scheduler`` assemble the engine from explicit
dependencies; ``main`` is the ``reminder-scheduler`` console entry point.
"""
from datetime import timedelta
from typing import Any, Callable, Mapping, Optional
import logging
import signal
import sys
import threading

from kombu.utils.imports import symbol_by_name
from prometheus_client import start_http_server
from sqlalchemy.engine import Engine

from reminder_service.core.config import settings as core_settings
from reminder_service.db.base import Base
from .channels import ChannelSender, build_channel_senders
from .metrics import reminders_deactivated_total, reminders_stale_claims_released_total
from .clock import Clock, SystemClock
from .config import ReminderSettings, settings as reminder_settings
from .notifier import OwnerNotifier
from .outbound import build_outbound_queue
from .repository import SqlAlchemyReminderStore
from .scanner import CycleSummary, DueScanner
from .scheduler import IntervalTrigger, Scheduler, WeeklyTrigger
from .schemas import Channel, ReminderRead

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
    )


def init_db(engine: Engine) -> None:
    from . import models  # noqa: F401  (registers the reminders table)

    Base.metadata.create_all(bind=engine)


def build_scanner(
    settings: ReminderSettings = reminder_settings,
    session_factory=None,
    clock: Optional[Clock] = None,
    senders: Optional[Mapping[Channel, ChannelSender]] = None,
    notifier: Optional[OwnerNotifier] = None,
) -> DueScanner:
    if session_factory is None:
        from reminder_service.db.session import SessionLocal

        session_factory = SessionLocal
    if senders is None:
        senders = build_channel_senders(settings, build_outbound_queue(settings))
    return DueScanner(
        store=SqlAlchemyReminderStore(session_factory),
        senders=senders,
        clock=clock or SystemClock(),
        notifier=notifier,
        batch_size=settings.SCHEDULER_BATCH_SIZE,
        concurrency=settings.WORKER_CONCURRENCY,
        send_timeout=settings.SEND_TIMEOUT_SECONDS,
        max_attempts=settings.MAX_SEND_ATTEMPTS,
    )


def resolve_digest_job(path: Optional[str]) -> Optional[Callable[[], Any]]:
    if not path:
        return None
    return symbol_by_name(path)


def run_scan(scanner: DueScanner) -> CycleSummary:
    summary = scanner.run_cycle(scanner.clock.now())
    logger.info(f"⏰ [Runner] processed {summary.processed} reminders ({summary.to_dict()})")
    return summary


def release_stale_claims(store: SqlAlchemyReminderStore, clock: Clock, max_age: timedelta) -> int:
    released = store.release_stale_claims(clock.now() - max_age)
    if released:
        reminders_stale_claims_released_total.inc(released)
        logger.warning(f"⚠️  [Runner] Released {released} stale claims older than {max_age}")
    return released


def record_delivery_failure(
    store: SqlAlchemyReminderStore, notifier: OwnerNotifier, reminder_id: str, reason: str
) -> Optional[ReminderRead]:
    """Deactivate a reminder whose queued email could not be delivered and tell its owner."""
    reminder = store.deactivate(reminder_id, reason)
    if reminder is None:
        logger.warning(f"⚠️  [Runner] Delivery failed for unknown reminder {reminder_id}: {reason}")
        return None
    reminders_deactivated_total.labels(outcome="delivery_failed").inc()
    notifier.notify_terminal_failure(reminder, reason)
    return reminder


def build_scheduler(
    scanner: DueScanner,
    settings: ReminderSettings = reminder_settings,
    digest_job: Optional[Callable[[], Any]] = None,
) -> Scheduler:
    scheduler = Scheduler(clock=scanner.clock)
    scheduler.add_job(
        "reminder-scan",
        IntervalTrigger(timedelta(minutes=settings.SCAN_INTERVAL_MINUTES)),
        lambda: run_scan(scanner),
    )
    if digest_job is not None:
        scheduler.add_job(
            "weekly-digest",
            WeeklyTrigger(settings.DIGEST_DAY_OF_WEEK, settings.DIGEST_HOUR_UTC),
            digest_job,
        )
    if isinstance(scanner.store, SqlAlchemyReminderStore):
        max_age = timedelta(minutes=settings.STALE_CLAIM_MINUTES)
        scheduler.add_job(
            "release-stale-claims",
            IntervalTrigger(timedelta(hours=1)),
            lambda: release_stale_claims(scanner.store, scanner.clock, max_age),
        )
    return scheduler


def main() -> None:
    configure_logging(core_settings.LOG_LEVEL, core_settings.LOG_FILE)
    logger.info(f"Starting {core_settings.PROJECT_NAME} {core_settings.VERSION} scheduler ({core_settings.ENVIRONMENT.value})")

    from reminder_service.db.session import engine

    init_db(engine)
    if reminder_settings.METRICS_ENABLED:
        start_http_server(reminder_settings.METRICS_PORT)
        logger.info(f"Metrics exposed on :{reminder_settings.METRICS_PORT}")

    scanner = build_scanner(reminder_settings)
    scheduler = build_scheduler(scanner, reminder_settings, resolve_digest_job(reminder_settings.DIGEST_JOB))

    shutdown = threading.Event()

    def _handle_signal(signum, _frame):
        logger.info(f"Received signal {signum}, shutting down")
        shutdown.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    scheduler.start()
    shutdown.wait()
    scheduler.stop(timeout=reminder_settings.SEND_TIMEOUT_SECONDS, wait_for_runs=True)


if __name__ == "__main__":
    main()
