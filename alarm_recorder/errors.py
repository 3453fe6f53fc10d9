"""
errors.py — Exception taxonomy for the alarm recorder.

Only :class:`ConfigError` is ever fatal, and only during initialisation.
Everything else is raised and caught inside the component that owns the
failing resource and turned into a log line.
"""

from __future__ import annotations

from typing import Optional


class AlarmRecorderError(RuntimeError):
    """Base class for all recorder errors.

    Wraps lower-level I/O, codec or transport errors so callers need only
    catch one exception type per failure class.

    Args:
        message: Human-readable description of the failure.
        cause: The original exception, if any.
    """

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.__cause__ = cause


class ConfigError(AlarmRecorderError):
    """A mandatory configuration field is missing or a value is malformed."""


class WriterOpenError(AlarmRecorderError):
    """The video encoder could not be opened for a new segment."""


class SnapshotWriteError(AlarmRecorderError):
    """A snapshot image could not be written."""


class TransportError(AlarmRecorderError):
    """The outbound alarm request failed or returned a non-success status."""
