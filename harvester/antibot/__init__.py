"""Retry, recovery and pacing helpers for polite collection."""

from .pacing import AdaptivePacer
from .retry import RecoveryLadder, RetryBudget, build_navigation_retry, classify_error

__all__ = [
    "AdaptivePacer",
    "RecoveryLadder",
    "RetryBudget",
    "build_navigation_retry",
    "classify_error",
]
