from typing import Protocol
import logging

from .schemas import ReminderRead

logger = logging.getLogger(__name__)


class OwnerNotifier(Protocol):
    """Tells a reminder's owner that it was closed without being delivered."""

    def notify_terminal_failure(self, reminder: ReminderRead, reason: str) -> None:
        ...


class LoggingOwnerNotifier:
    def notify_terminal_failure(self, reminder: ReminderRead, reason: str) -> None:
        logger.warning(
            f"📣 [Notifier] Reminder {reminder.id} for user {reminder.user_id} "
            f"deactivated after failed delivery over {reminder.channel.value}: {reason}"
        )
