"""Exceptions raised by the recurring-transaction scheduler."""


class SchedulerError(Exception):
    """Base class for scheduler failures."""


class ValidationError(SchedulerError):
    """A job definition is malformed; it is rejected and never persisted."""


class AccountNotFound(SchedulerError):
    """The owning account does not exist (or was deleted mid-flight)."""

    def __init__(self, owner_id: str) -> None:
        super().__init__(f"Account not found: {owner_id}")
        self.owner_id = owner_id


class StorageUnavailable(SchedulerError):
    """Persistence failed after retries were exhausted."""


class DuplicateOccurrence(SchedulerError):
    """The occurrence was already applied or superseded.

    Callers absorb this silently; it is never surfaced to users.
    """
