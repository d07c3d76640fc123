"""Domain errors raised by the booking engine.

Only ``NotFound``, ``InvalidInterval`` and ``SlotUnavailable`` are meant to reach
callers; the others are handled inside the engine.
"""

from typing import Optional


class BookingEngineError(Exception):
    """Base class for booking engine errors."""


class NotFound(BookingEngineError, LookupError):
    """A branch, staff member, service, appointment or conflict does not exist."""

    def __init__(self, entity: str, identifier):
        self.entity = entity
        self.identifier = identifier
        super().__init__(f"{entity} {identifier} not found")


class InvalidInterval(BookingEngineError, ValueError):
    """End is not after start, or a duration is not positive."""


class SlotUnavailable(BookingEngineError):
    """The requested slot was taken by a concurrently created appointment."""

    def __init__(self, staff_id: int, start, end, conflicting_id: Optional[int] = None):
        self.staff_id = staff_id
        self.start = start
        self.end = end
        self.conflicting_id = conflicting_id
        super().__init__(
            f"Staff {staff_id} is no longer available from {start} to {end}"
        )


class ConflictPersistenceFailure(BookingEngineError):
    """Recording detected conflicts failed; nothing was written."""


class ResolutionExecutionFailure(BookingEngineError):
    """An action of a resolution strategy failed; the strategy had no effect."""


class EscalationRequired(BookingEngineError):
    """Automatic resolution is exhausted and the conflict goes to a human."""

    def __init__(self, conflict_id: int, attempts: int):
        self.conflict_id = conflict_id
        self.attempts = attempts
        super().__init__(
            f"Conflict {conflict_id} requires manual intervention after {attempts} attempts"
        )
