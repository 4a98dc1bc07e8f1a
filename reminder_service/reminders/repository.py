from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator, List, Optional, Protocol, Union
import logging
import uuid
from pydantic import ValidationError
from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from reminder_service.utils.timezone import to_utc_aware, utc_now
from .errors import StoreUnavailableError
from .models import Reminder
from .schemas import Channel, DispatchOutcome, DispatchState, Recurrence, ReminderCreate, ReminderRead

logger = logging.getLogger(__name__)

_CHANNELS = [c.value for c in Channel]
_RECURRENCES = [r.value for r in Recurrence]

ReminderId = Union[str, uuid.UUID]


class ReminderStore(Protocol):
    """Persistence boundary used by the scanner"""

    def find_due(self, now: datetime, limit: int = 1000) -> List[ReminderRead]:
        ...

    def try_claim(self, reminder_id: ReminderId) -> bool:
        ...

    def apply_outcome(self, reminder_id: ReminderId, outcome: DispatchOutcome) -> None:
        ...


def _as_uuid(reminder_id: ReminderId) -> uuid.UUID:
    return reminder_id if isinstance(reminder_id, uuid.UUID) else uuid.UUID(str(reminder_id))


class SqlAlchemyReminderStore:
    """ReminderStore over the ``reminders`` table.

    Every call opens its own short session so the store can be shared by the
    scan worker threads. The claim is a single conditional UPDATE; the row
    count tells whether this process won it. Due rows whose channel or
    recurrence the engine does not know are deactivated by ``find_due``.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def create_reminder(self, data: ReminderCreate) -> ReminderRead:
        reminder = Reminder(
            user_id=data.user_id,
            message=data.message,
            next_fire_at=data.next_fire_at,
            recurrence=data.recurrence.value,
            channel=data.channel.value,
            recipient=data.recipient,
            end_repeat=data.end_repeat,
            goal_id=data.goal_id,
            is_active=True,
            dispatch_state=DispatchState.PENDING.value,
            attempt_count=0,
        )
        with self._session() as db:
            db.add(reminder)
            db.commit()
            db.refresh(reminder)
            logger.info(f"⏰ [Store] Reminder {reminder.id} created for user {reminder.user_id}")
            return ReminderRead.model_validate(reminder)

    def get_reminder(self, reminder_id: ReminderId) -> Optional[ReminderRead]:
        with self._session() as db:
            r = db.get(Reminder, _as_uuid(reminder_id))
            return ReminderRead.model_validate(r) if r else None

    def find_due(self, now: datetime, limit: int = 1000) -> List[ReminderRead]:
        now = to_utc_aware(now)
        due_filter = (
            Reminder.is_active == True,  # noqa: E712
            Reminder.dispatch_state == DispatchState.PENDING.value,
            Reminder.next_fire_at <= now,
        )
        stmt = (
            select(Reminder)
            .where(*due_filter)
            .where(Reminder.channel.in_(_CHANNELS))
            .where(Reminder.recurrence.in_(_RECURRENCES))
            .order_by(Reminder.next_fire_at.asc())
            .limit(limit)
        )
        malformed = (
            update(Reminder)
            .where(*due_filter)
            .where(or_(Reminder.channel.not_in(_CHANNELS), Reminder.recurrence.not_in(_RECURRENCES)))
            .values(
                is_active=False,
                dispatch_state=DispatchState.FAILED.value,
                last_error="unknown channel or recurrence",
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        due: List[ReminderRead] = []
        invalid: List[uuid.UUID] = []
        with self._session() as db:
            for r in db.execute(stmt).scalars():
                try:
                    due.append(ReminderRead.model_validate(r))
                except ValidationError as e:
                    logger.error(f"❌ [Store] Deactivating malformed reminder {r.id}: {e}")
                    invalid.append(r.id)
            closed = db.execute(malformed).rowcount
            if invalid:
                db.execute(
                    update(Reminder)
                    .where(Reminder.id.in_(invalid))
                    .where(Reminder.dispatch_state == DispatchState.PENDING.value)
                    .values(
                        is_active=False,
                        dispatch_state=DispatchState.FAILED.value,
                        last_error="malformed reminder record",
                        updated_at=utc_now(),
                    )
                    .execution_options(synchronize_session=False)
                )
            db.commit()
        if closed:
            logger.error(f"❌ [Store] Deactivated {closed} due reminders with an unknown channel or recurrence")
        return due

    def try_claim(self, reminder_id: ReminderId) -> bool:
        stmt = (
            update(Reminder)
            .where(Reminder.id == _as_uuid(reminder_id))
            .where(Reminder.is_active == True)  # noqa: E712
            .where(Reminder.dispatch_state == DispatchState.PENDING.value)
            .values(
                dispatch_state=DispatchState.CLAIMED.value,
                claimed_at=utc_now(),
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        with self._session() as db:
            result = db.execute(stmt)
            db.commit()
            return result.rowcount == 1

    def apply_outcome(self, reminder_id: ReminderId, outcome: DispatchOutcome) -> None:
        values = {
            "dispatch_state": outcome.dispatch_state.value,
            "is_active": outcome.is_active,
            "claimed_at": None,
            "last_error": outcome.error,
            "updated_at": utc_now(),
        }
        if outcome.next_fire_at is not None:
            values["next_fire_at"] = to_utc_aware(outcome.next_fire_at)
        if outcome.sent_at is not None:
            values["last_sent_at"] = to_utc_aware(outcome.sent_at)
        if outcome.reset_attempts:
            values["attempt_count"] = 0
        elif outcome.increment_attempts:
            values["attempt_count"] = Reminder.attempt_count + 1

        stmt = (
            update(Reminder)
            .where(Reminder.id == _as_uuid(reminder_id))
            .where(Reminder.dispatch_state == DispatchState.CLAIMED.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        with self._session() as db:
            result = db.execute(stmt)
            db.commit()
            if result.rowcount != 1:
                # The claim was released underneath us (stale-claim recovery)
                logger.warning(
                    f"⚠️  [Store] Outcome {outcome.kind.value} for reminder {reminder_id} "
                    f"matched no claimed row"
                )

    def deactivate(self, reminder_id: ReminderId, reason: str) -> Optional[ReminderRead]:
        """Close a reminder whose delivery failed after the scanner released it.

        Returns the updated reminder, or None if it does not exist.
        """
        stmt = (
            update(Reminder)
            .where(Reminder.id == _as_uuid(reminder_id))
            .values(
                is_active=False,
                dispatch_state=DispatchState.FAILED.value,
                claimed_at=None,
                last_error=reason,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        with self._session() as db:
            db.execute(stmt)
            db.commit()
        return self.get_reminder(reminder_id)

    def release_stale_claims(self, older_than: datetime) -> int:
        """Return reminders stuck in ``claimed`` since before ``older_than`` to pending."""
        stmt = (
            update(Reminder)
            .where(Reminder.dispatch_state == DispatchState.CLAIMED.value)
            .where(Reminder.claimed_at <= to_utc_aware(older_than))
            .values(
                dispatch_state=DispatchState.PENDING.value,
                claimed_at=None,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        with self._session() as db:
            result = db.execute(stmt)
            db.commit()
            return result.rowcount

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
        except SQLAlchemyError as exc:
            db.rollback()
            raise StoreUnavailableError(str(exc)) from exc
        finally:
            db.close()
