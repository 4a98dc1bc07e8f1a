"""
Due-reminder scanner.

One cycle finds pending reminders whose occurrence has come due, claims each
one with the store's conditional update, sends it over its channel and writes
the next state back. The conditional claim is the only thing preventing two
workers (overlapping ticks or other replicas) from sending the same
occurrence, so nothing here keeps in-process locks on reminders.
"""
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout, as_completed
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Mapping, Optional
import logging
import threading
import time

from reminder_service.utils.timezone import to_utc_aware
from . import recurrence
from .channels import ChannelSender, FailureKind, SendResult
from .clock import Clock, SystemClock
from .errors import StoreUnavailableError
from .metrics import (
    reminders_claim_conflicts_total,
    reminders_claimed_total,
    reminders_deactivated_total,
    reminders_dispatch_failed_total,
    reminders_dispatch_success_total,
    scheduler_last_cycle_timestamp,
    scheduler_scan_aborted_total,
    scheduler_scans_total,
)
from .notifier import LoggingOwnerNotifier, OwnerNotifier
from .repository import ReminderStore
from .schemas import Channel, DispatchOutcome, OutcomeKind, ReminderRead

logger = logging.getLogger(__name__)


class _Result(Enum):
    SKIPPED = "skipped"
    SENT = "sent"
    FAILED = "failed"


@dataclass
class CycleSummary:
    claimed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    aborted: bool = False

    @property
    def processed(self) -> int:
        return self.sent + self.failed

    def to_dict(self) -> dict:
        return asdict(self)


class DueScanner:
    def __init__(
        self,
        store: ReminderStore,
        senders: Mapping[Channel, ChannelSender],
        clock: Optional[Clock] = None,
        notifier: Optional[OwnerNotifier] = None,
        batch_size: int = 500,
        concurrency: int = 4,
        send_timeout: float = 30.0,
        max_attempts: int = 3,
    ):
        self.store = store
        self.senders = dict(senders)
        self.clock = clock or SystemClock()
        self.notifier = notifier or LoggingOwnerNotifier()
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.send_timeout = send_timeout
        self.max_attempts = max_attempts

    def run_cycle(self, now: Optional[datetime] = None) -> CycleSummary:
        """Process every reminder due at ``now``.

        Raises ``StoreUnavailableError`` when the candidate query itself
        fails; a store failure later in the cycle stops the remaining work
        and is reported through ``CycleSummary.aborted``.
        """
        now = to_utc_aware(now) if now is not None else self.clock.now()
        scheduler_scans_total.inc()
        try:
            candidates = self.store.find_due(now, limit=self.batch_size)
        except StoreUnavailableError:
            scheduler_scan_aborted_total.inc()
            logger.error("❌ [Scanner] Store unavailable, skipping this cycle")
            raise

        summary = CycleSummary()
        if not candidates:
            scheduler_last_cycle_timestamp.set(time.time())
            return summary

        logger.info(f"⏰ [Scanner] Processing {len(candidates)} due reminders at {now.isoformat()}")
        abort = threading.Event()
        # Timed-out sends are abandoned, not interrupted, and keep their thread
        send_pool = ThreadPoolExecutor(max_workers=self.concurrency * 2, thread_name_prefix="reminder-send")
        try:
            with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="reminder-scan") as pool:
                futures = [pool.submit(self._process, r, now, abort, send_pool) for r in candidates]
                for future in as_completed(futures):
                    result = future.result()
                    if result is _Result.SKIPPED:
                        summary.skipped += 1
                    else:
                        summary.claimed += 1
                        if result is _Result.SENT:
                            summary.sent += 1
                        else:
                            summary.failed += 1
        finally:
            send_pool.shutdown(wait=False, cancel_futures=True)

        summary.aborted = abort.is_set()
        if summary.aborted:
            scheduler_scan_aborted_total.inc()
        scheduler_last_cycle_timestamp.set(time.time())
        logger.info(f"✅ [Scanner] Cycle finished: {summary.to_dict()}")
        return summary

    def _process(
        self, reminder: ReminderRead, now: datetime, abort: threading.Event, send_pool: ThreadPoolExecutor
    ) -> _Result:
        if abort.is_set():
            return _Result.SKIPPED
        try:
            claimed = self.store.try_claim(reminder.id)
        except StoreUnavailableError as e:
            abort.set()
            logger.error(f"❌ [Scanner] Claim of reminder {reminder.id} failed, aborting cycle: {e}")
            return _Result.SKIPPED
        if not claimed:
            reminders_claim_conflicts_total.inc()
            logger.debug(f"[Scanner] Reminder {reminder.id} already claimed elsewhere")
            return _Result.SKIPPED
        reminders_claimed_total.inc()

        result = self._send(reminder, send_pool)
        outcome = self._decide(reminder, result, now)
        try:
            self.store.apply_outcome(reminder.id, outcome)
        except StoreUnavailableError as e:
            abort.set()
            logger.error(
                f"❌ [Scanner] Could not record {outcome.kind.value} for reminder {reminder.id}; "
                f"it stays claimed until stale claims are released: {e}"
            )
        self._observe(reminder, result, outcome)
        return _Result.SENT if result.ok else _Result.FAILED

    def _send(self, reminder: ReminderRead, send_pool: ThreadPoolExecutor) -> SendResult:
        """Run the channel send on the send pool, bounded by ``send_timeout``.

        A send that overruns is abandoned, not interrupted. Its worker thread
        stays busy until the sender returns, and because executor threads are
        joined at interpreter exit a sender that never returns also holds up
        process shutdown. Sends queued behind abandoned threads may time out
        before they start; those are cancelled and reported as not attempted,
        so they do not count towards ``max_attempts``.
        """
        sender = self.senders.get(reminder.channel)
        if sender is None:
            return SendResult.permanent(f"no sender registered for channel {reminder.channel.value}")
        future = send_pool.submit(sender.send, reminder)
        try:
            return future.result(timeout=self.send_timeout)
        except FutureTimeout:
            if future.cancel():
                return SendResult.transient(
                    f"send not started within {self.send_timeout}s (send pool busy)", attempted=False
                )
            return SendResult.transient(f"send timed out after {self.send_timeout}s")
        except Exception as e:
            logger.exception(f"❌ [Scanner] Sender for {reminder.channel.value} raised on reminder {reminder.id}")
            return SendResult.transient(f"sender raised {e!r}")

    def _decide(self, reminder: ReminderRead, result: SendResult, now: datetime) -> DispatchOutcome:
        if result.ok:
            sent_at = self.clock.now()
            next_fire_at = recurrence.advance(reminder)
            if next_fire_at is None:
                return DispatchOutcome.completed(sent_at)
            if next_fire_at <= now:
                # More than one period behind: one catch-up send, then the series is closed
                return DispatchOutcome.overdue(
                    sent_at,
                    f"series behind schedule (next occurrence {next_fire_at.isoformat()} already due); deactivated",
                )
            return DispatchOutcome.advanced(next_fire_at, sent_at)

        if result.failure is FailureKind.PERMANENT:
            return DispatchOutcome.rejected(result.detail)
        if not result.attempted:
            return DispatchOutcome.retry(result.detail, count_attempt=False)
        if reminder.attempt_count + 1 >= self.max_attempts:
            return DispatchOutcome.exhausted(
                f"{result.detail} (attempt {reminder.attempt_count + 1} of {self.max_attempts})"
            )
        return DispatchOutcome.retry(result.detail)

    def _observe(self, reminder: ReminderRead, result: SendResult, outcome: DispatchOutcome) -> None:
        channel = reminder.channel.value
        if result.ok:
            reminders_dispatch_success_total.labels(channel=channel).inc()
            logger.info(f"✅ [Scanner] Reminder {reminder.id} sent over {channel} ({outcome.kind.value})")
        else:
            reminders_dispatch_failed_total.labels(channel=channel, kind=result.failure.value).inc()
            logger.warning(
                f"⚠️  [Scanner] Reminder {reminder.id} not delivered over {channel} "
                f"({outcome.kind.value}): {result.detail}"
            )
        if not outcome.is_active:
            reminders_deactivated_total.labels(outcome=outcome.kind.value).inc()
        if outcome.kind in (OutcomeKind.EXHAUSTED, OutcomeKind.REJECTED, OutcomeKind.OVERDUE):
            try:
                self.notifier.notify_terminal_failure(reminder, outcome.error or result.detail)
            except Exception:
                logger.exception(f"❌ [Scanner] Owner notification failed for reminder {reminder.id}")
