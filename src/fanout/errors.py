"""Error taxonomy for fanout.

Only :class:`TransportError`, :class:`AbortedError` and its subclasses ever
terminate a Conversation Turn. :class:`DecodeError` is always recovered by the
decoder and :class:`ToolExecutionError` is encoded as tool-result content.
"""

from __future__ import annotations


class FanoutError(Exception):
    """Base class for all fanout errors."""


class TransportError(FanoutError):
    """The backend failed before or during a streamed response."""


class DecodeError(FanoutError, ValueError):
    """A frame could not be decoded. Logged and dropped, never fatal."""


class ToolExecutionError(FanoutError):
    """Raised by a tool to report a failure the model should react to.

    The message is sent back to the model verbatim as the tool result.
    """


class AbortedError(FanoutError):
    """An operation was cancelled through its abort signal.

    Args:
        message: Human readable description.
        reason: The exception the signal was aborted with, if any.
    """

    def __init__(self, message: str = "operation aborted", reason: BaseException | None = None):
        super().__init__(message)
        self.reason = reason


class TaskTimeoutError(AbortedError, TimeoutError):
    """A scheduled task exceeded its timeout."""


class JobTimeoutError(FanoutError, TimeoutError):
    """An async job did not reach a terminal status before its deadline."""


class InvalidTransitionError(FanoutError, RuntimeError):
    """A task state transition would move backwards or leave a terminal state."""
