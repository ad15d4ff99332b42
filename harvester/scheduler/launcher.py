"""Start worker processes and exchange progress through JSON result files."""
from __future__ import annotations

import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import List, Optional, Protocol, Sequence

import orjson

from ..models import WorkerAssignment, WorkerProgress

LOGGER = logging.getLogger(__name__)


class ProcessHandle(Protocol):
    pid: int

    def poll(self) -> Optional[int]:
        ...

    def terminate(self) -> None:
        ...

    def kill(self) -> None:
        ...


class Launcher(Protocol):
    def launch(self, assignment: WorkerAssignment, progress_path: Path, output_path: Path) -> ProcessHandle:
        ...


class SubprocessLauncher:
    """Run each assignment as ``python -m harvester.scheduler.worker``."""

    def __init__(
        self,
        config_path: Optional[str] = None,
        extra_args: Sequence[str] = (),
        python: str = sys.executable,
        log_dir: Optional[Path] = None,
    ) -> None:
        self.config_path = config_path
        self.extra_args = list(extra_args)
        self.python = python
        self.log_dir = log_dir

    def command(self, assignment: WorkerAssignment, progress_path: Path, output_path: Path) -> List[str]:
        cmd = [
            self.python,
            "-m",
            "harvester.scheduler.worker",
            "--assignment",
            assignment.model_dump_json(),
            "--progress",
            str(progress_path),
            "--output",
            str(output_path),
        ]
        if self.config_path:
            cmd += ["--config", self.config_path]
        return cmd + self.extra_args

    def launch(self, assignment: WorkerAssignment, progress_path: Path, output_path: Path) -> ProcessHandle:
        cmd = self.command(assignment, progress_path, output_path)
        stdout = None
        if self.log_dir is not None:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            stdout = (self.log_dir / f"{assignment.id}.log").open("ab")
        LOGGER.info("Launching %s for pages %d-%d", assignment.id, assignment.page_range_start, assignment.page_range_end)
        try:
            return subprocess.Popen(cmd, stdout=stdout, stderr=subprocess.STDOUT if stdout else None)
        finally:
            if stdout is not None:
                stdout.close()


def write_progress(path: Path, progress: WorkerProgress) -> None:
    """Atomically replace the progress file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_bytes(orjson.dumps(progress.model_dump(mode="json")))
    os.replace(tmp_path, path)


def read_progress(path: Path) -> Optional[WorkerProgress]:
    if not path.exists():
        return None
    try:
        return WorkerProgress(**orjson.loads(path.read_bytes()))
    except (orjson.JSONDecodeError, ValueError) as exc:
        LOGGER.warning("Unreadable progress file %s: %s", path, exc)
        return None
