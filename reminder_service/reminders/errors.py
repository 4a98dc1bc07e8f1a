class ReminderEngineError(Exception):
    """Base class for reminder engine errors"""


class RecurrenceError(ReminderEngineError):
    """Raised when a next occurrence is requested for a non-recurring rule"""


class StoreUnavailableError(ReminderEngineError):
    """The reminder store could not be reached; the current cycle is abandoned"""


class ChannelConfigurationError(ReminderEngineError):
    """A channel sender is missing required configuration"""
