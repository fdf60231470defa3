"""Exceptions raised while starting a stacking session."""

from __future__ import annotations


class InitializationError(Exception):
    """The anchor frame cannot start a session.

    Raised when no detection threshold yields a usable star count, or when the
    anchor holds too few stars to align against.
    """

    NO_THRESHOLD = "no_threshold"
    TOO_FEW_STARS = "too_few_stars"

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason
