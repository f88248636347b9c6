"""
Nudge - Errors
Everything here is recoverable: the caller retries or the next sweep does.
"""
from typing import Optional


class NudgeError(Exception):
    """Base class for follow-up scheduling errors."""


class ValidationError(NudgeError):
    """A draft failed validation. Nothing was written."""

    def __init__(self, index: Optional[int], reason: str):
        self.index = index
        self.reason = reason
        where = f"message {index + 1}" if index is not None else "request"
        super().__init__(f"{where}: {reason}")

    def to_dict(self) -> dict:
        return {"index": self.index, "reason": self.reason}


class SendFailure(NudgeError):
    """The email provider did not accept a message."""


class DetectionFailure(NudgeError):
    """Could not determine whether the thread has a reply."""


class ConcurrencyConflict(NudgeError):
    """The sequence or its messages changed state since they were read."""


class SequenceNotFound(NudgeError):
    """No such sequence for this user."""
