"""Domain exceptions raised by room operations."""

from __future__ import annotations


class DecisionRoomError(RuntimeError):
    """Base class for errors surfaced by the decision room core."""


class AuthorizationError(DecisionRoomError):
    """Caller is not a member of the room."""


class StateConflict(DecisionRoomError):
    """Operation attempted outside the state it is valid in."""


class CapacityExceeded(DecisionRoomError):
    """A join lost the race for the last seat; calling join again is safe."""


class DataIntegrityError(DecisionRoomError):
    """Stored room history violates an invariant (e.g. a round without a commit)."""


class DuplicateSuppressed(DecisionRoomError):
    """Insert-if-absent found an existing row.

    Never shown to participants: callers fetch the existing row instead.
    """


class InvalidInput(DecisionRoomError):
    """Vote or commit payload fails domain validation (unknown option, empty justification)."""
