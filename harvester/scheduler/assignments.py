"""Partition a page span into worker assignments and compute start times."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple

from ..models import SchedulePolicy, WorkerAssignment

DEFAULT_POLICIES: List[SchedulePolicy] = [
    SchedulePolicy.CONTINUOUS,
    SchedulePolicy.OFFSET_START,
    SchedulePolicy.NIGHT_WINDOW,
    SchedulePolicy.WEEKEND_ONLY,
]

DEFAULT_DELAY_RANGES_MS: List[Tuple[int, int]] = [
    (30000, 45000),
    (35000, 50000),
    (40000, 55000),
    (45000, 60000),
]

NIGHT_START_HOUR = 22
NIGHT_END_HOUR = 6
WEEKEND_START_HOUR = 9


def partition(
    total_pages: int,
    workers: int,
    policies: Optional[Sequence[SchedulePolicy]] = None,
    delay_ranges_ms: Optional[Sequence[Tuple[int, int]]] = None,
    start_page: int = 1,
) -> List[WorkerAssignment]:
    """Split ``total_pages`` into contiguous, disjoint ranges.

    Earlier workers get the extra page when the split is uneven.  Policies and
    delay ranges are assigned round-robin.
    """
    if total_pages < 1:
        raise ValueError("total_pages must be positive")
    if workers < 1:
        raise ValueError("workers must be positive")
    policies = list(policies or DEFAULT_POLICIES)
    delay_ranges = list(delay_ranges_ms or DEFAULT_DELAY_RANGES_MS)
    workers = min(workers, total_pages)

    size, remainder = divmod(total_pages, workers)
    assignments: List[WorkerAssignment] = []
    page = start_page
    for index in range(workers):
        span = size + (1 if index < remainder else 0)
        assignments.append(
            WorkerAssignment(
                id=f"worker-{index + 1}",
                page_range_start=page,
                page_range_end=page + span - 1,
                schedule_policy=policies[index % len(policies)],
                delay_range_ms=delay_ranges[index % len(delay_ranges)],
            )
        )
        page += span
    return assignments


def next_start(policy: SchedulePolicy, now: datetime) -> datetime:
    """Earliest moment at or after ``now`` that ``policy`` allows a start."""
    if policy == SchedulePolicy.CONTINUOUS:
        return now
    if policy == SchedulePolicy.OFFSET_START:
        if now.minute >= 30:
            return now
        return now.replace(minute=30, second=0, microsecond=0)
    if policy == SchedulePolicy.NIGHT_WINDOW:
        if now.hour >= NIGHT_START_HOUR or now.hour < NIGHT_END_HOUR:
            return now
        return now.replace(hour=NIGHT_START_HOUR, minute=0, second=0, microsecond=0)
    if policy == SchedulePolicy.WEEKEND_ONLY:
        if now.weekday() >= 5:
            return now
        days_until_saturday = 5 - now.weekday()
        saturday = now + timedelta(days=days_until_saturday)
        return saturday.replace(hour=WEEKEND_START_HOUR, minute=0, second=0, microsecond=0)
    raise ValueError(f"unknown schedule policy: {policy}")
