from datetime import datetime, timedelta, timezone

import pytest

from harvester.config import SchedulerConfig
from harvester.models import SchedulePolicy, StopReason, WorkerAssignment, WorkerProgress
from harvester.scheduler.assignments import next_start, partition
from harvester.scheduler.launcher import SubprocessLauncher, read_progress, write_progress
from harvester.scheduler.scheduler import WorkerScheduler, WorkerStatus

MONDAY_NOON = datetime(2026, 10, 12, 12, 15, tzinfo=timezone.utc)


class FakeHandle:
    def __init__(self, exit_code=None):
        self.exit_code = exit_code
        self.pid = 4242
        self.terminated = False
        self.killed = False

    def poll(self):
        return self.exit_code

    def terminate(self):
        self.terminated = True
        self.exit_code = -15

    def kill(self):
        self.killed = True
        self.exit_code = -9


class FakeLauncher:
    """Hands out handles whose exit codes are scripted per assignment."""

    def __init__(self, exit_codes=None):
        self.exit_codes = exit_codes or {}
        self.launched = []
        self.handles = {}

    def launch(self, assignment, progress_path, output_path):
        self.launched.append(assignment.id)
        codes = self.exit_codes.get(assignment.id)
        handle = FakeHandle(codes.pop(0) if codes else None)
        self.handles[assignment.id] = handle
        return handle


def _assignment(worker_id, start, end, policy=SchedulePolicy.CONTINUOUS):
    return WorkerAssignment(id=worker_id, page_range_start=start, page_range_end=end, schedule_policy=policy)


def _scheduler(tmp_path, assignments, launcher, **config):
    config.setdefault("work_dir", str(tmp_path))
    return WorkerScheduler(
        assignments,
        SchedulerConfig(**config),
        launcher,
        clock=lambda: MONDAY_NOON,
        sleep=lambda s: None,
    )


def test_partition_splits_evenly_with_extras_first():
    assignments = partition(10, 3)
    assert [(a.page_range_start, a.page_range_end) for a in assignments] == [(1, 4), (5, 7), (8, 10)]
    assert [a.id for a in assignments] == ["worker-1", "worker-2", "worker-3"]
    assert [a.schedule_policy for a in assignments] == [
        SchedulePolicy.CONTINUOUS,
        SchedulePolicy.OFFSET_START,
        SchedulePolicy.NIGHT_WINDOW,
    ]
    assert assignments[1].delay_range_ms == (35000, 50000)


def test_partition_never_creates_empty_ranges():
    assignments = partition(2, 4, start_page=11)
    assert [(a.page_range_start, a.page_range_end) for a in assignments] == [(11, 11), (12, 12)]


def test_partition_rejects_bad_input():
    with pytest.raises(ValueError):
        partition(0, 2)
    with pytest.raises(ValueError):
        partition(10, 0)


@pytest.mark.parametrize(
    "policy, now, expected",
    [
        (SchedulePolicy.CONTINUOUS, MONDAY_NOON, MONDAY_NOON),
        (SchedulePolicy.OFFSET_START, MONDAY_NOON, MONDAY_NOON.replace(minute=30)),
        (SchedulePolicy.OFFSET_START, MONDAY_NOON.replace(minute=45), MONDAY_NOON.replace(minute=45)),
        (SchedulePolicy.NIGHT_WINDOW, MONDAY_NOON, MONDAY_NOON.replace(hour=22, minute=0)),
        (SchedulePolicy.NIGHT_WINDOW, MONDAY_NOON.replace(hour=3), MONDAY_NOON.replace(hour=3)),
        (
            SchedulePolicy.WEEKEND_ONLY,
            MONDAY_NOON,
            datetime(2026, 10, 17, 9, 0, tzinfo=timezone.utc),
        ),
        (
            SchedulePolicy.WEEKEND_ONLY,
            MONDAY_NOON + timedelta(days=6),
            MONDAY_NOON + timedelta(days=6),
        ),
    ],
)
def test_next_start(policy, now, expected):
    assert next_start(policy, now) == expected


def test_failing_worker_is_restarted_then_marked_permanently_failed(tmp_path):
    launcher = FakeLauncher(exit_codes={"worker-1": [1, 1, 1]})
    scheduler = _scheduler(
        tmp_path,
        [_assignment("worker-1", 1, 10), _assignment("worker-2", 11, 20)],
        launcher,
        max_restarts=2,
        restart_cooldown_s=60,
    )
    t0 = MONDAY_NOON
    scheduler.tick(t0)
    assert launcher.launched == ["worker-1", "worker-2"]

    scheduler.tick(t0 + timedelta(seconds=1))
    slot = scheduler.slots["worker-1"]
    assert slot.status is WorkerStatus.COOLDOWN
    assert slot.not_before == t0 + timedelta(seconds=61)

    # still cooling down
    scheduler.tick(t0 + timedelta(seconds=30))
    assert launcher.launched.count("worker-1") == 1

    scheduler.tick(t0 + timedelta(seconds=61))
    scheduler.tick(t0 + timedelta(seconds=62))
    scheduler.tick(t0 + timedelta(seconds=122))
    assert launcher.launched.count("worker-1") == 3

    scheduler.tick(t0 + timedelta(seconds=123))
    assert slot.status is WorkerStatus.PERMANENTLY_FAILED
    assert len(slot.failures) == 3
    assert scheduler.slots["worker-2"].status is WorkerStatus.RUNNING

    report = scheduler.report()
    assert report["permanently_failed"] == ["worker-1"]
    assert report["workers"]["worker-1"]["launches"] == 3


def test_completed_worker_reports_stop_reason(tmp_path):
    launcher = FakeLauncher(exit_codes={"worker-1": [0]})
    scheduler = _scheduler(tmp_path, [_assignment("worker-1", 1, 5)], launcher)
    write_progress(
        scheduler.progress_path("worker-1"),
        WorkerProgress(assignment_id="worker-1", pages_processed=5, unique_collected=80,
                       stop_reason=StopReason.RANGE_EXHAUSTED),
    )
    report = scheduler.run()

    assert scheduler.slots["worker-1"].status is WorkerStatus.COMPLETED
    assert report["unique_collected"] == 80
    assert report["permanently_failed"] == []


def test_health_check_kills_slow_erroring_worker(tmp_path):
    launcher = FakeLauncher()
    scheduler = _scheduler(
        tmp_path,
        [_assignment("worker-1", 1, 10)],
        launcher,
        max_runtime_s=100,
        error_ceiling=2,
        health_interval_s=10,
    )
    t0 = MONDAY_NOON
    scheduler.tick(t0)
    write_progress(
        scheduler.progress_path("worker-1"),
        WorkerProgress(assignment_id="worker-1", pages_processed=3, error_count=5),
    )

    scheduler.tick(t0 + timedelta(seconds=200))
    assert launcher.handles["worker-1"].killed

    scheduler.tick(t0 + timedelta(seconds=201))
    slot = scheduler.slots["worker-1"]
    assert slot.status is WorkerStatus.COOLDOWN
    assert slot.last_exit_code == -9
    assert slot.budget.attempts == 1


def test_healthy_long_runner_is_left_alone(tmp_path):
    launcher = FakeLauncher()
    scheduler = _scheduler(tmp_path, [_assignment("worker-1", 1, 10)], launcher, max_runtime_s=100,
                           health_interval_s=10)
    scheduler.tick(MONDAY_NOON)
    scheduler.tick(MONDAY_NOON + timedelta(seconds=500))
    assert not launcher.handles["worker-1"].killed


def test_global_target_stops_and_cancels_workers(tmp_path):
    launcher = FakeLauncher()
    scheduler = _scheduler(
        tmp_path,
        [_assignment("worker-1", 1, 4), _assignment("worker-2", 5, 8, SchedulePolicy.WEEKEND_ONLY)],
        launcher,
    )
    scheduler.tick(MONDAY_NOON)
    assert launcher.launched == ["worker-1"]
    write_progress(
        scheduler.progress_path("worker-1"),
        WorkerProgress(assignment_id="worker-1", unique_collected=96, target_estimate=100),
    )

    scheduler.tick(MONDAY_NOON + timedelta(seconds=5))
    assert scheduler.target_met
    assert launcher.handles["worker-1"].terminated
    assert scheduler.slots["worker-2"].status is WorkerStatus.CANCELLED

    scheduler.tick(MONDAY_NOON + timedelta(seconds=10))
    assert scheduler.slots["worker-1"].status is WorkerStatus.CANCELLED
    assert scheduler.slots["worker-1"].failures == []
    assert scheduler.done()


def test_launch_error_counts_as_failure(tmp_path):
    class BrokenLauncher(FakeLauncher):
        def launch(self, assignment, progress_path, output_path):
            raise OSError("no such interpreter")

    scheduler = _scheduler(tmp_path, [_assignment("worker-1", 1, 10)], BrokenLauncher(), max_restarts=0)
    scheduler.tick(MONDAY_NOON)
    assert scheduler.slots["worker-1"].status is WorkerStatus.PERMANENTLY_FAILED


def test_subprocess_command_line(tmp_path):
    launcher = SubprocessLauncher(config_path="harvest.yaml", python="python3")
    assignment = _assignment("worker-2", 5, 9)
    cmd = launcher.command(assignment, tmp_path / "p.json", tmp_path / "o.jsonl")

    assert cmd[:3] == ["python3", "-m", "harvester.scheduler.worker"]
    assert WorkerAssignment.model_validate_json(cmd[cmd.index("--assignment") + 1]) == assignment
    assert cmd[cmd.index("--config") + 1] == "harvest.yaml"


def test_progress_file_roundtrip_and_corruption(tmp_path):
    path = tmp_path / "w.progress.json"
    assert read_progress(path) is None
    write_progress(path, WorkerProgress(assignment_id="w", unique_collected=7))
    assert read_progress(path).unique_collected == 7
    path.write_text("{not json")
    assert read_progress(path) is None
