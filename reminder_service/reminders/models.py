"""
Reminder table - one row per reminder series, advanced in place occurrence by occurrence
"""
from sqlalchemy import Column, String, DateTime, Boolean, Integer, Index, Uuid
import uuid

from reminder_service.db.base import Base
from reminder_service.utils.timezone import utc_now


class Reminder(Base):
    __tablename__ = "reminders"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String, nullable=False, index=True)
    message = Column(String(255), nullable=False)
    next_fire_at = Column(DateTime(timezone=True), nullable=False)
    recurrence = Column(String, nullable=False, default="none")
    channel = Column(String, nullable=False, default="app")
    recipient = Column(String, nullable=True)  # email address, E.164 number or device token
    is_active = Column(Boolean, nullable=False, default=True)
    dispatch_state = Column(String, nullable=False, default="pending")
    end_repeat = Column(DateTime(timezone=True), nullable=True)
    goal_id = Column(String, nullable=True)

    # Claim protocol bookkeeping
    attempt_count = Column(Integer, nullable=False, default=0)  # consecutive failures, current occurrence
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    last_sent_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    __table_args__ = (
        Index("ix_reminders_due", "is_active", "dispatch_state", "next_fire_at"),
        Index("ix_reminders_user_fire", "user_id", "next_fire_at"),
        Index("ix_reminders_goal", "goal_id"),
    )
