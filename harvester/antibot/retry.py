"""Error classification, navigation retry policy and recovery escalation."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt

from ..errors import ErrorKind, TransientNavigationError

LOGGER = logging.getLogger(__name__)

# Navigation-class failures back off longer than plain timeouts.
KIND_WAIT_FACTOR: Dict[ErrorKind, float] = {
    ErrorKind.TIMEOUT: 1.0,
    ErrorKind.NAVIGATION: 2.5,
    ErrorKind.CHALLENGE: 2.0,
    ErrorKind.HTTP_STATUS: 1.5,
}

_SIGNATURES = [
    (ErrorKind.TIMEOUT, ("timeout", "timed out")),
    (ErrorKind.CHALLENGE, ("challenge", "captcha", "cloudflare", "just a moment")),
    (ErrorKind.HTTP_STATUS, ("status 4", "status 5", "http 4", "http 5")),
    (ErrorKind.NAVIGATION, ("navigation", "net::", "err_", "frame was detached", "target closed")),
]


def classify_error(error: BaseException | str) -> ErrorKind:
    """Map an error message to an ``ErrorKind`` by signature."""
    if isinstance(error, TransientNavigationError):
        return error.kind
    message = str(error).lower()
    for kind, needles in _SIGNATURES:
        if any(needle in message for needle in needles):
            return kind
    return ErrorKind.NAVIGATION


@dataclass
class RetryBudget:
    """Restart allowance for one worker assignment.

    Every restart waits the same cooldown; once ``max_retries`` restarts are
    spent the assignment is given up.
    """

    max_retries: int = 2
    cooldown_s: float = 60.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        self.attempts = 0

    @property
    def remaining(self) -> int:
        return self.max_retries - self.attempts

    def should_retry(self) -> bool:
        return self.attempts < self.max_retries

    def consume(self) -> float:
        """Spend one restart and return the cooldown to wait before it."""
        if not self.should_retry():
            raise RuntimeError("restart budget exhausted")
        self.attempts += 1
        return self.cooldown_s

    def reset(self) -> None:
        self.attempts = 0


class KindAwareWait:
    """Tenacity wait: capped exponential backoff scaled by the error kind."""

    def __init__(self, base: float, cap: float) -> None:
        self.base = base
        self.cap = cap

    def __call__(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        factor = KIND_WAIT_FACTOR.get(classify_error(exc), 1.0) if exc else 1.0
        delay = self.base * factor * (2 ** (retry_state.attempt_number - 1))
        return min(delay, self.cap)


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    LOGGER.warning(
        "Navigation attempt %d failed (%s: %s); retrying in %.1fs",
        retry_state.attempt_number,
        classify_error(exc).value if exc else "unknown",
        exc,
        retry_state.next_action.sleep if retry_state.next_action else 0.0,
    )


def build_navigation_retry(
    max_attempts: int = 3,
    backoff_base: float = 2.0,
    backoff_cap: float = 30.0,
    sleep: Callable[[float], None] = time.sleep,
) -> Retrying:
    """Retry controller for page navigation.

    Parameters
    ----------
    max_attempts : int
        Total attempts including the first one
    backoff_base : float
        Seconds before the first retry of a timeout
    backoff_cap : float
        Upper bound for any single wait
    sleep : callable
        Injected for tests

    Returns
    -------
    tenacity.Retrying
        Re-raises the last ``TransientNavigationError`` when exhausted
    """
    return Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=KindAwareWait(backoff_base, backoff_cap),
        retry=retry_if_exception_type(TransientNavigationError),
        before_sleep=_log_retry,
        sleep=sleep,
        reraise=True,
    )


class RecoveryLadder:
    """Ordered recovery steps tried on a page that rendered empty."""

    DEFAULT_LEVELS = ("reload", "back_forward")

    def __init__(self, levels: Optional[Sequence[str]] = None) -> None:
        self.levels: List[str] = list(levels or self.DEFAULT_LEVELS)
        self.current_level = -1

    def escalate(self) -> Optional[str]:
        """Move to the next step.

        Returns
        -------
        str or None
            Next step name, or None if exhausted
        """
        self.current_level += 1
        if self.current_level >= len(self.levels):
            LOGGER.debug("Recovery ladder exhausted after %d steps", len(self.levels))
            return None
        return self.levels[self.current_level]

    def reset(self) -> None:
        self.current_level = -1
