"""Adaptive inter-page delay driven by recent success rate and error count."""
from __future__ import annotations

import logging
import random
from collections import deque
from typing import Deque, Optional, Tuple

LOGGER = logging.getLogger(__name__)


class AdaptivePacer:
    """Compute polite delays that slow down when the site pushes back.

    Parameters
    ----------
    delay_range_ms : tuple[int, int]
        Base delay range; the midpoint is the starting delay
    min_delay_ms : int
        Floor applied after multipliers and jitter
    window : int
        Number of recent page outcomes considered for the success rate
    rng : random.Random, optional
        Source of jitter (seed it in tests)
    """

    def __init__(
        self,
        delay_range_ms: Tuple[int, int] = (2000, 4000),
        min_delay_ms: int = 1500,
        window: int = 20,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.delay_range_ms = delay_range_ms
        self.min_delay_ms = min_delay_ms
        self.outcomes: Deque[bool] = deque(maxlen=window)
        self.error_count = 0
        self.rng = rng or random.Random()

    def record_success(self) -> None:
        self.outcomes.append(True)
        self.error_count = max(0, self.error_count - 1)

    def record_failure(self) -> None:
        self.outcomes.append(False)
        self.error_count += 1

    def success_rate(self) -> float:
        if not self.outcomes:
            return 1.0
        return sum(self.outcomes) / len(self.outcomes)

    def multiplier(self) -> float:
        rate = self.success_rate()
        if rate < 0.7:
            factor = 2.0
        elif rate < 0.8:
            factor = 1.5
        elif rate > 0.95:
            factor = 0.8
        else:
            factor = 1.0
        if self.error_count > 3:
            factor *= 1.5
        return factor

    def next_delay_ms(self) -> int:
        low, high = self.delay_range_ms
        base = (low + high) / 2
        jitter = self.rng.uniform(0.8, 1.2)
        delay = max(self.min_delay_ms, int(base * self.multiplier() * jitter))
        LOGGER.debug(
            "Next delay %dms (success_rate=%.2f, errors=%d)",
            delay,
            self.success_rate(),
            self.error_count,
        )
        return delay

    def next_delay_seconds(self) -> float:
        return self.next_delay_ms() / 1000.0
