"""Supervise worker processes: staggered starts, health checks, restarts."""
from __future__ import annotations

import logging
import signal
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from ..antibot.retry import RetryBudget
from ..config import SchedulerConfig
from ..errors import WorkerProcessFailure
from ..models import WorkerAssignment, WorkerProgress
from .assignments import next_start
from .launcher import Launcher, ProcessHandle, read_progress

LOGGER = logging.getLogger(__name__)


class WorkerStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COOLDOWN = "cooldown"
    COMPLETED = "completed"
    PERMANENTLY_FAILED = "permanently_failed"
    CANCELLED = "cancelled"


TERMINAL = {WorkerStatus.COMPLETED, WorkerStatus.PERMANENTLY_FAILED, WorkerStatus.CANCELLED}


@dataclass
class WorkerSlot:
    assignment: WorkerAssignment
    budget: RetryBudget
    not_before: datetime
    status: WorkerStatus = WorkerStatus.PENDING
    handle: Optional[ProcessHandle] = None
    started_at: Optional[datetime] = None
    launches: int = 0
    last_exit_code: Optional[int] = None
    progress: Optional[WorkerProgress] = None
    failures: List[str] = field(default_factory=list)


class WorkerScheduler:
    """Run assignments as independent processes until all are settled.

    Parameters
    ----------
    assignments : sequence of WorkerAssignment
        Disjoint page ranges
    config : SchedulerConfig
        Cooldown, restart budget, health thresholds
    launcher : Launcher
        Starts worker processes
    work_dir : Path, optional
        Where progress and output files live (``config.work_dir`` by default)
    clock : callable, optional
        Returns an aware ``datetime``; injected for tests
    sleep : callable
        Used by ``run()`` between ticks
    """

    def __init__(
        self,
        assignments: Sequence[WorkerAssignment],
        config: SchedulerConfig,
        launcher: Launcher,
        work_dir: Optional[Path] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.launcher = launcher
        self.work_dir = Path(work_dir or config.work_dir)
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.sleep = sleep
        now = self.clock()
        self.slots: Dict[str, WorkerSlot] = {
            a.id: WorkerSlot(
                assignment=a,
                budget=RetryBudget(max_retries=config.max_restarts, cooldown_s=config.restart_cooldown_s),
                not_before=next_start(a.schedule_policy, now),
            )
            for a in assignments
        }
        self.running = False
        self.target_met = False
        self._last_health_check = now

    def progress_path(self, assignment_id: str) -> Path:
        return self.work_dir / f"{assignment_id}.progress.json"

    def output_path(self, assignment_id: str) -> Path:
        return self.work_dir / f"{assignment_id}.records.jsonl"

    def _launch(self, slot: WorkerSlot, now: datetime) -> None:
        assignment = slot.assignment
        try:
            slot.handle = self.launcher.launch(
                assignment,
                self.progress_path(assignment.id),
                self.output_path(assignment.id),
            )
        except OSError as exc:
            LOGGER.error("Could not launch %s: %s", assignment.id, exc)
            self._handle_failure(slot, None, now)
            return
        slot.launches += 1
        slot.status = WorkerStatus.RUNNING
        slot.started_at = now
        LOGGER.info(
            "Started %s (pid=%s, launch #%d, policy=%s)",
            assignment.id,
            getattr(slot.handle, "pid", "?"),
            slot.launches,
            assignment.schedule_policy.value,
        )

    def _handle_failure(self, slot: WorkerSlot, exit_code: Optional[int], now: datetime) -> None:
        failure = WorkerProcessFailure(slot.assignment.id, exit_code)
        slot.failures.append(str(failure))
        slot.handle = None
        if slot.budget.should_retry():
            delay = slot.budget.consume()
            slot.status = WorkerStatus.COOLDOWN
            slot.not_before = now + timedelta(seconds=delay)
            LOGGER.warning(
                "worker_restart %s: %s; restart %d/%d in %.0fs",
                slot.assignment.id,
                failure,
                slot.budget.attempts,
                slot.budget.max_retries,
                delay,
            )
        else:
            slot.status = WorkerStatus.PERMANENTLY_FAILED
            LOGGER.error(
                "worker_permanently_failed %s after %d launches: %s",
                slot.assignment.id,
                slot.launches,
                failure,
            )

    def _poll(self, slot: WorkerSlot, now: datetime) -> None:
        slot.progress = read_progress(self.progress_path(slot.assignment.id)) or slot.progress
        code = slot.handle.poll() if slot.handle is not None else None
        if code is None:
            return
        slot.last_exit_code = code
        if code == 0:
            slot.status = WorkerStatus.COMPLETED
            slot.handle = None
            reason = slot.progress.stop_reason.value if slot.progress and slot.progress.stop_reason else "unknown"
            LOGGER.info("%s finished (stop_reason=%s)", slot.assignment.id, reason)
        elif self.target_met:
            slot.status = WorkerStatus.CANCELLED
            slot.handle = None
            LOGGER.info("%s stopped after global target (exit=%d)", slot.assignment.id, code)
        else:
            self._handle_failure(slot, code, now)

    def health_check(self, now: datetime) -> None:
        """Terminate workers that ran too long while accumulating errors."""
        self._last_health_check = now
        for slot in self.slots.values():
            if slot.status != WorkerStatus.RUNNING or slot.handle is None or slot.started_at is None:
                continue
            runtime = (now - slot.started_at).total_seconds()
            errors = slot.progress.error_count if slot.progress else 0
            if runtime > self.config.max_runtime_s and errors > self.config.error_ceiling:
                LOGGER.warning(
                    "Health check: terminating %s (runtime=%.0fs, errors=%d)",
                    slot.assignment.id,
                    runtime,
                    errors,
                )
                slot.handle.kill()

    def aggregate(self) -> Dict[str, Optional[float]]:
        unique = sum(s.progress.unique_collected for s in self.slots.values() if s.progress)
        targets = [s.progress.target_estimate for s in self.slots.values() if s.progress and s.progress.target_estimate]
        target = max(targets) if targets else None
        return {
            "unique_collected": unique,
            "target_estimate": target,
            "percentage": unique / target if target else None,
        }

    def _stop_all(self, reason: str) -> None:
        for slot in self.slots.values():
            if slot.status == WorkerStatus.RUNNING and slot.handle is not None:
                LOGGER.info("Stopping %s: %s", slot.assignment.id, reason)
                slot.handle.terminate()
            elif slot.status in (WorkerStatus.PENDING, WorkerStatus.COOLDOWN):
                slot.status = WorkerStatus.CANCELLED
                LOGGER.info("Cancelled %s: %s", slot.assignment.id, reason)

    def tick(self, now: Optional[datetime] = None) -> None:
        """One supervision step; never raises on worker failure."""
        now = now or self.clock()
        for slot in self.slots.values():
            if slot.status == WorkerStatus.RUNNING:
                self._poll(slot, now)

        if (now - self._last_health_check).total_seconds() >= self.config.health_interval_s:
            self.health_check(now)

        if not self.target_met:
            percentage = self.aggregate()["percentage"]
            if percentage is not None and percentage >= self.config.completeness_target:
                self.target_met = True
                LOGGER.info("Global coverage target reached (%.1f%%)", percentage * 100)
                self._stop_all("coverage target reached")

        if self.target_met:
            for slot in self.slots.values():
                if slot.status in (WorkerStatus.PENDING, WorkerStatus.COOLDOWN):
                    slot.status = WorkerStatus.CANCELLED
            return
        for slot in self.slots.values():
            if slot.status in (WorkerStatus.PENDING, WorkerStatus.COOLDOWN) and now >= slot.not_before:
                self._launch(slot, now)

    def done(self) -> bool:
        return all(slot.status in TERMINAL for slot in self.slots.values())

    def _handle_shutdown(self, signum, frame) -> None:
        LOGGER.info("Received shutdown signal %s, stopping workers...", signum)
        self.running = False

    def run(self) -> Dict[str, object]:
        signal.signal(signal.SIGINT, self._handle_shutdown)
        signal.signal(signal.SIGTERM, self._handle_shutdown)
        self.running = True
        LOGGER.info("Scheduler starting with %d assignments", len(self.slots))
        while self.running and not self.done():
            self.tick()
            if self.done():
                break
            self.sleep(self.config.poll_interval_s)

        if not self.done():
            self._stop_all("scheduler shutdown")
            for slot in self.slots.values():
                if slot.status == WorkerStatus.RUNNING:
                    slot.status = WorkerStatus.CANCELLED
        report = self.report()
        LOGGER.info("Scheduler finished: %s", report)
        return report

    def report(self) -> Dict[str, object]:
        return {
            "workers": {
                slot.assignment.id: {
                    "status": slot.status.value,
                    "launches": slot.launches,
                    "last_exit_code": slot.last_exit_code,
                    "pages": f"{slot.assignment.page_range_start}-{slot.assignment.page_range_end}",
                    "unique_collected": slot.progress.unique_collected if slot.progress else 0,
                    "failures": list(slot.failures),
                }
                for slot in self.slots.values()
            },
            "permanently_failed": [
                slot.assignment.id
                for slot in self.slots.values()
                if slot.status == WorkerStatus.PERMANENTLY_FAILED
            ],
            **self.aggregate(),
        }
