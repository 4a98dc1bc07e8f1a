"""
In-process timers for the reminder scan and the weekly digest.

The scheduler is an ordinary object: build it, add jobs, ``start()`` it and
``stop()`` it. Every tick runs its job on a fresh thread, so a cycle that is
still running never delays the next tick.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, Protocol
import logging
import threading

from croniter import croniter

from reminder_service.utils.timezone import to_utc_aware
from .clock import Clock, SystemClock

logger = logging.getLogger(__name__)


class Trigger(Protocol):
    def next_fire(self, after: datetime) -> datetime:
        ...


class IntervalTrigger:
    def __init__(self, interval: timedelta):
        if interval <= timedelta(0):
            raise ValueError("interval must be positive")
        self.interval = interval

    def next_fire(self, after: datetime) -> datetime:
        return to_utc_aware(after) + self.interval

    def __repr__(self) -> str:
        return f"IntervalTrigger(every {self.interval})"


class WeeklyTrigger:
    """Fires once a week at ``hour_utc``:00 on ``day_of_week`` (0=Sunday, cron numbering)."""

    def __init__(self, day_of_week: int, hour_utc: int):
        if not 0 <= day_of_week <= 6:
            raise ValueError("day_of_week must be 0-6")
        if not 0 <= hour_utc <= 23:
            raise ValueError("hour_utc must be 0-23")
        self.day_of_week = day_of_week
        self.hour_utc = hour_utc
        self.expression = f"0 {hour_utc} * * {day_of_week}"

    def next_fire(self, after: datetime) -> datetime:
        return to_utc_aware(croniter(self.expression, to_utc_aware(after)).get_next(datetime))

    def __repr__(self) -> str:
        return f"WeeklyTrigger({self.expression!r})"


@dataclass
class ScheduledJob:
    name: str
    trigger: Trigger
    func: Callable[[], Any]
    launches: int = 0
    last_launch_at: Optional[datetime] = None


class Scheduler:
    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()
        self.jobs: List[ScheduledJob] = []
        self._stop = threading.Event()
        self._timers: List[threading.Thread] = []
        self._runs: List[threading.Thread] = []
        self._runs_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._timers)

    def add_job(self, name: str, trigger: Trigger, func: Callable[[], Any]) -> ScheduledJob:
        if self.running:
            raise RuntimeError("cannot add jobs to a running scheduler")
        job = ScheduledJob(name=name, trigger=trigger, func=func)
        self.jobs.append(job)
        return job

    def start(self) -> None:
        if self.running:
            raise RuntimeError("scheduler already started")
        self._stop.clear()
        self._timers = [
            threading.Thread(target=self._run_timer, args=(job,), name=f"timer-{job.name}", daemon=True)
            for job in self.jobs
        ]
        for t in self._timers:
            t.start()
        logger.info(f"✅ [Scheduler] Started {len(self._timers)} timers: {[j.name for j in self.jobs]}")

    def stop(self, timeout: Optional[float] = None, wait_for_runs: bool = False) -> None:
        self._stop.set()
        for t in self._timers:
            t.join(timeout)
        if wait_for_runs:
            with self._runs_lock:
                runs = list(self._runs)
            for t in runs:
                t.join(timeout)
        logger.info("🛑 [Scheduler] Stopped")

    def _run_timer(self, job: ScheduledJob) -> None:
        next_at = job.trigger.next_fire(self.clock.now())
        logger.info(f"⏰ [Scheduler] {job.name} ({job.trigger!r}) first run at {next_at.isoformat()}")
        while not self._stop.is_set():
            delay = (next_at - self.clock.now()).total_seconds()
            if delay > 0 and self._stop.wait(delay):
                break
            self._launch(job)
            next_at = job.trigger.next_fire(next_at)
            now = self.clock.now()
            if next_at <= now:
                # Timer fell behind; resume from the present instead of firing a burst
                next_at = job.trigger.next_fire(now)

    def _launch(self, job: ScheduledJob) -> None:
        job.launches += 1
        job.last_launch_at = self.clock.now()
        t = threading.Thread(target=self._run_job, args=(job,), name=f"{job.name}-{job.launches}", daemon=True)
        with self._runs_lock:
            self._runs = [r for r in self._runs if r.is_alive()]
            self._runs.append(t)
        t.start()

    def _run_job(self, job: ScheduledJob) -> None:
        try:
            job.func()
        except Exception:
            logger.exception(f"❌ [Scheduler] Job {job.name} failed; next tick will retry")
