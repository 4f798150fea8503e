# backend/governor/errors.py
"""
Error taxonomy for the training governor.

Only BudgetExceeded and KillSwitchActive are operator-visible. Per-battle
failures (ProviderError, PersistenceError, EmptyTranscriptError) are caught by
the scheduler and counted in the batch summary.
"""

from typing import Any, Optional


class GovernorError(Exception):
    """Base class for governor errors."""
    pass


class BudgetExceeded(GovernorError):
    """Today's spend reached the daily cap. The kill switch is active."""

    def __init__(self, message: str, summary: Optional[Any] = None):
        super().__init__(message)
        self.summary = summary


class KillSwitchActive(GovernorError):
    """The kill switch is active; no new battles may start."""

    def __init__(self, message: str, summary: Optional[Any] = None):
        super().__init__(message)
        self.summary = summary


class ProviderError(GovernorError):
    """Synthesis, judge or embedding provider failed."""
    pass


class PersistenceError(GovernorError):
    """A battle row could not be written."""
    pass


class EmptyTranscriptError(GovernorError):
    """Synthesis produced no transcript; the battle is skipped."""
    pass


class MissingConfigError(GovernorError):
    """A cap, threshold or profile is missing or invalid. Fatal at startup."""
    pass


class InvalidReviewTransition(GovernorError):
    """A breakthrough review was applied to a battle that is not pending review."""
    pass
