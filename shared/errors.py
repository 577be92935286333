from __future__ import annotations

from typing import Optional


class ReminderError(Exception):
    """Base class for every error raised by the reminder core."""

    code: str = "reminder_error"

    def __init__(self, message: str = "", *, code: Optional[str] = None):
        super().__init__(message)
        if code:
            self.code = code


class InvalidRuleError(ReminderError):
    """Malformed recurrence definition. Raised at construction, never coerced."""

    code = "invalid_rule"


class InvalidRecurrenceError(ReminderError):
    """A lifecycle transition was rejected because its recurrence rule is unusable."""

    code = "invalid_recurrence"

    def __init__(self, message: str, *, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class InvalidTransitionError(ReminderError):
    code = "invalid_transition"


class ReminderNotFoundError(ReminderError):
    code = "not_found"

    def __init__(self, reminder_id: str):
        super().__init__(f"reminder {reminder_id} not found")
        self.reminder_id = reminder_id


class StoreConflictError(ReminderError):
    """Concurrent write to the same reminder document. Surfaced for the caller to retry."""

    code = "store_conflict"

    def __init__(self, reminder_id: str, expected_version: Optional[int], actual_version: Optional[int]):
        super().__init__(
            f"reminder {reminder_id}: expected version {expected_version}, found {actual_version}"
        )
        self.reminder_id = reminder_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class TransportUnavailableError(ReminderError):
    """Delivery transport failed or timed out. Recoverable on the next reconcile."""

    code = "transport_unavailable"

    def __init__(self, operation: str, detail: str = "", *, identifier: Optional[str] = None):
        msg = f"{operation} failed"
        if identifier:
            msg += f" for {identifier}"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)
        self.operation = operation
        self.identifier = identifier


class PermissionDeniedError(ReminderError):
    code = "forbidden"

    def __init__(self, user_id: str, reminder_id: str):
        super().__init__(f"user {user_id} cannot modify reminder {reminder_id}")
        self.user_id = user_id
        self.reminder_id = reminder_id
