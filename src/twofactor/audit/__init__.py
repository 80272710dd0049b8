"""Audit module for verification attempts.

Provides the attempt entry type, its factory function and the
append-only log used for rate limiting and forensic display.
"""

from __future__ import annotations

from .events import FAILURE_OUTCOMES, VerificationAttempt, attempt_event
from .log import AttemptLog

__all__: list[str] = [
    "FAILURE_OUTCOMES",
    "VerificationAttempt",
    "attempt_event",
    "AttemptLog",
]
