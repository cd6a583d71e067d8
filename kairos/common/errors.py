"""Error taxonomy for the proactive control system.

None of these are fatal to the process. They are raised at the seams where a
tick can fail and handled by the loop that owns the tick.
"""


class ProactiveError(Exception):
    """Base exception for the proactive control system"""
    pass


class InvalidTimezone(ProactiveError):
    """Raised when an IANA timezone name cannot be resolved"""

    def __init__(self, name: str):
        super().__init__(f"Invalid timezone: {name!r}")
        self.name = name


class DecisionTimeout(ProactiveError):
    """Raised when the decision collaborator does not answer in time"""
    pass


class DeliveryFailure(ProactiveError):
    """Raised when no notification channel accepted a message"""
    pass


class LockContention(ProactiveError):
    """Raised when the shared state lock cannot be acquired within its bound"""
    pass


class StateConflict(LockContention):
    """Raised when a durable compare-and-set lost a race with another writer"""
    pass


class DataIntegrityError(ProactiveError):
    """Raised when a stored record cannot be decoded"""
    pass
