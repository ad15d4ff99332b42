"""Worker process entry point: run one assignment and report through files.

Exit codes: 0 on a normal stop condition, 2 when the browser cannot start,
1 for any other harvester error.
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from ..collector.cli import configure_logging
from ..collector.runner import HarvestSession
from ..config import load_config
from ..errors import HarvestError, RendererUnavailable
from ..models import WorkerAssignment, WorkerProgress
from ..persistence import JsonlRecordSink
from .launcher import write_progress

LOGGER = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one harvest worker assignment")
    parser.add_argument("--assignment", required=True, help="WorkerAssignment as JSON")
    parser.add_argument("--progress", required=True, type=Path, help="Progress file to rewrite after each page")
    parser.add_argument("--output", required=True, type=Path, help="JSON-lines record output")
    parser.add_argument("--config", default=None, help="YAML configuration file")
    parser.add_argument("--verbose", action="store_true")
    return parser.parse_args(argv)


def run_assignment(args: argparse.Namespace) -> int:
    assignment = WorkerAssignment.model_validate_json(args.assignment)
    config = load_config(
        args.config,
        delay_range_ms=assignment.delay_range_ms,
        schedule_policy=assignment.schedule_policy,
    )

    def on_progress(progress: WorkerProgress) -> None:
        write_progress(args.progress, progress)

    session = HarvestSession(
        config,
        sink=JsonlRecordSink(args.output),
        start_page=assignment.page_range_start,
        end_page=assignment.page_range_end,
        on_progress=on_progress,
        assignment_id=assignment.id,
    )
    write_progress(args.progress, WorkerProgress(assignment_id=assignment.id, status="starting"))
    try:
        session.run()
    except RendererUnavailable as exc:
        LOGGER.error("Worker %s: renderer unavailable: %s", assignment.id, exc)
        write_progress(args.progress, WorkerProgress(assignment_id=assignment.id, status="failed"))
        return 2
    except HarvestError as exc:
        LOGGER.error("Worker %s failed: %s", assignment.id, exc, exc_info=True)
        write_progress(args.progress, WorkerProgress(assignment_id=assignment.id, status="failed"))
        return 1
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    configure_logging(args.verbose)
    sys.exit(run_assignment(args))


if __name__ == "__main__":
    main()
