"""
Exceptions raised by the voting power engine.

Fatal errors (unknown or duplicate addresses, broken invariants) are not
retryable. Upstream read failures are retryable and are absorbed by the
record store whenever a last known value exists.
"""
from typing import Optional


class VotingPowerError(Exception):
    """Base exception for all voting power tracking errors."""

    def __init__(self, message: str, retryable: bool = False,
                 address: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.retryable = retryable
        self.address = address

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        result = {
            "error": type(self).__name__,
            "error_message": self.message,
            "retryable": self.retryable,
        }
        if self.address is not None:
            result["address"] = self.address
        return result


class AlreadyTracked(VotingPowerError):
    def __init__(self, address: str):
        super().__init__(f"Address {address} is already being tracked",
                         address=address)


class NotTracked(VotingPowerError):
    def __init__(self, address: str):
        super().__init__(f"Address {address} is not tracked", address=address)


class SnapshotNotFound(VotingPowerError):
    def __init__(self, snapshot_id: str):
        super().__init__(f"Snapshot {snapshot_id} not found")
        self.snapshot_id = snapshot_id


class UpstreamReadError(VotingPowerError):
    """The balance read capability failed."""

    def __init__(self, message: str, address: Optional[str] = None):
        super().__init__(message, retryable=True, address=address)


class UpstreamReadTimeout(UpstreamReadError):
    """The balance read capability did not answer in time."""


class InconsistentSnapshot(VotingPowerError):
    """An internal invariant was violated while building analytics."""
