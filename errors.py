"""Error taxonomy for the progression engine.

Every error here is per-request and recoverable: callers fix their input and
retry, or simply retry. Nothing here should take the process down.

    ProgressionError
    ├── ValidationError            rejected before any mutation
    │   └── RejectedAttempt        carries a RejectionReason
    │       └── ConflictError      idempotency key already applied (a no-op)
    ├── NotFoundError              unknown student / topic on reads
    └── PersistenceError           the atomic commit failed after retries
"""

from enum import Enum


class RejectionReason(str, Enum):
    UNKNOWN_REFERENCE = "unknown_reference"
    INACTIVE_STUDENT = "inactive_student"
    DUPLICATE_KEY = "duplicate_key"
    MALFORMED_ANSWER = "malformed_answer"
    IMPLAUSIBLE_TIMING = "implausible_timing"


class ProgressionError(Exception):
    """Base class for all engine errors."""


class ValidationError(ProgressionError):
    """Input was rejected before it could affect any state."""


class RejectedAttempt(ValidationError):
    """An attempt failed validation for a specific reason."""

    def __init__(self, reason: RejectionReason, message: str = ""):
        self.reason = reason
        self.message = message or reason.value
        super().__init__(f"{reason.value}: {self.message}")


class ConflictError(RejectedAttempt):
    """The idempotency key has already been applied for this student."""

    def __init__(self, student_id: str, idempotency_key: str):
        self.student_id = student_id
        self.idempotency_key = idempotency_key
        super().__init__(
            RejectionReason.DUPLICATE_KEY,
            f"attempt {idempotency_key!r} already applied for {student_id!r}",
        )


class NotFoundError(ProgressionError):
    """A referenced student, topic or problem does not exist."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} {identifier!r} not found")


class PersistenceError(ProgressionError):
    """Storage failed to commit a coordinated update.

    `retryable` is set for transient failures such as a locked database;
    the coordinator retries the whole update for those.
    """

    def __init__(self, message: str, retryable: bool = False):
        self.retryable = retryable
        super().__init__(message)
