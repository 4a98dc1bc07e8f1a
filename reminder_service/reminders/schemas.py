"""
Reminder schemas shared by the store, the scanner and the channel senders
"""
from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from reminder_service.utils.timezone import to_utc_aware


class Recurrence(str, Enum):
    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class Channel(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    APP = "app"


class DispatchState(str, Enum):
    PENDING = "pending"
    CLAIMED = "claimed"
    SENT = "sent"
    FAILED = "failed"


class OutcomeKind(str, Enum):
    """What the scanner decided after one dispatch attempt"""
    ADVANCED = "advanced"      # sent, series continues
    COMPLETED = "completed"    # sent, series finished
    OVERDUE = "overdue"        # sent, series was behind schedule and has been closed
    RETRY = "retry"            # failed, same occurrence retried next cycle
    EXHAUSTED = "exhausted"    # failed too many times, deactivated
    REJECTED = "rejected"      # permanent failure, deactivated


class ReminderCreate(BaseModel):
    """Schema for seeding a reminder into the store"""
    user_id: str
    message: str = Field(..., min_length=1, max_length=255)
    next_fire_at: datetime
    recurrence: Recurrence = Recurrence.NONE
    channel: Channel = Channel.APP
    recipient: Optional[str] = None
    end_repeat: Optional[datetime] = None
    goal_id: Optional[str] = None

    @field_validator("message", mode="before")
    @classmethod
    def _strip_message(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("next_fire_at", "end_repeat")
    @classmethod
    def _normalize_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_utc_aware(v)

    @model_validator(mode="after")
    def _end_after_start(self) -> "ReminderCreate":
        if self.end_repeat is not None and self.end_repeat <= self.next_fire_at:
            raise ValueError("end_repeat must be after next_fire_at")
        return self


class ReminderRead(BaseModel):
    """Detached snapshot of a stored reminder"""
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    message: str
    next_fire_at: datetime
    recurrence: Recurrence
    channel: Channel
    recipient: Optional[str] = None
    is_active: bool
    dispatch_state: DispatchState
    end_repeat: Optional[datetime] = None
    goal_id: Optional[str] = None
    attempt_count: int = 0
    claimed_at: Optional[datetime] = None
    last_sent_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_str(cls, v):
        return str(v) if isinstance(v, UUID) else v

    @field_validator(
        "next_fire_at", "end_repeat", "claimed_at", "last_sent_at", "created_at", "updated_at"
    )
    @classmethod
    def _normalize_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        # SQLite drops tzinfo; everything is stored as UTC
        return to_utc_aware(v)


class DispatchOutcome(BaseModel):
    """Post-dispatch state to persist for one claimed reminder"""
    kind: OutcomeKind
    dispatch_state: DispatchState
    is_active: bool
    next_fire_at: Optional[datetime] = None  # None keeps the stored occurrence
    reset_attempts: bool = False
    increment_attempts: bool = False
    sent_at: Optional[datetime] = None
    error: Optional[str] = None

    @classmethod
    def advanced(cls, next_fire_at: datetime, sent_at: datetime) -> "DispatchOutcome":
        return cls(
            kind=OutcomeKind.ADVANCED,
            dispatch_state=DispatchState.PENDING,
            is_active=True,
            next_fire_at=next_fire_at,
            reset_attempts=True,
            sent_at=sent_at,
        )

    @classmethod
    def completed(cls, sent_at: datetime) -> "DispatchOutcome":
        return cls(
            kind=OutcomeKind.COMPLETED,
            dispatch_state=DispatchState.SENT,
            is_active=False,
            reset_attempts=True,
            sent_at=sent_at,
        )

    @classmethod
    def overdue(cls, sent_at: datetime, error: str) -> "DispatchOutcome":
        return cls(
            kind=OutcomeKind.OVERDUE,
            dispatch_state=DispatchState.SENT,
            is_active=False,
            reset_attempts=True,
            sent_at=sent_at,
            error=error,
        )

    @classmethod
    def retry(cls, error: str, count_attempt: bool = True) -> "DispatchOutcome":
        return cls(
            kind=OutcomeKind.RETRY,
            dispatch_state=DispatchState.PENDING,
            is_active=True,
            increment_attempts=count_attempt,
            error=error,
        )

    @classmethod
    def exhausted(cls, error: str) -> "DispatchOutcome":
        return cls(
            kind=OutcomeKind.EXHAUSTED,
            dispatch_state=DispatchState.FAILED,
            is_active=False,
            increment_attempts=True,
            error=error,
        )

    @classmethod
    def rejected(cls, error: str) -> "DispatchOutcome":
        return cls(
            kind=OutcomeKind.REJECTED,
            dispatch_state=DispatchState.FAILED,
            is_active=False,
            increment_attempts=True,
            error=error,
        )
