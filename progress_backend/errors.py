"""Error taxonomy shared by the engine modules and the HTTP layer."""

from typing import Any, Optional


class ProgressEngineError(Exception):
    """Base class for every error raised by the engine."""


class ProgressValidationError(ProgressEngineError):
    """Malformed input rejected before any storage access."""


class UnknownTimeZoneError(ProgressEngineError):
    """Zone identifier not present in the known zone table."""

    def __init__(self, time_zone: Optional[str]):
        super().__init__(f"Unknown time zone: {time_zone!r}")
        self.time_zone = time_zone


class AlreadyFinalizedError(ProgressEngineError):
    """A submission targeted a day whose record is already final.

    Informational: the deltas were dropped and ``record`` is the untouched
    final record.
    """

    def __init__(self, record: Any):
        super().__init__(f"Progress for {record.user_id} on {record.day} is already finalized")
        self.record = record


class OpportunityUnavailableError(ProgressEngineError):
    """Reward milestone is unknown for the user or was already claimed."""

    def __init__(self, user_id: str, milestone: int):
        super().__init__(f"No unused reward opportunity at {milestone} points for user {user_id}")
        self.user_id = user_id
        self.milestone = milestone


class StorageUnavailableError(ProgressEngineError):
    """The authoritative store cannot be reached. Safe to retry."""
