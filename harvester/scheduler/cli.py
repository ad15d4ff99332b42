"""CLI for the multi-worker scheduler."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import click
import orjson

from ..collector.cli import configure_logging
from ..config import load_scheduler_config
from .assignments import partition
from .launcher import SubprocessLauncher
from .scheduler import WorkerScheduler

LOGGER = logging.getLogger(__name__)


@click.group()
def cli():
    """Harvest scheduler CLI."""
    pass


@cli.command()
@click.option("--workers", default=None, type=int, help="Number of worker processes")
@click.option("--total-pages", default=None, type=int, help="Pages to split across workers")
@click.option("--start-page", default=None, type=int)
@click.option("--config", "config_path", default=None, type=click.Path(exists=True, dir_okay=False))
@click.option("--work-dir", default=None, help="Directory for progress, output and worker logs")
@click.option("--log-file", default=None)
@click.option("-v", "--verbose", is_flag=True)
def start(
    workers: Optional[int],
    total_pages: Optional[int],
    start_page: Optional[int],
    config_path: Optional[str],
    work_dir: Optional[str],
    log_file: Optional[str],
    verbose: bool,
) -> None:
    """Partition the page span and supervise workers until all settle."""
    configure_logging(verbose, log_file)
    config = load_scheduler_config(
        config_path,
        workers=workers,
        total_pages=total_pages,
        start_page=start_page,
        work_dir=work_dir,
    )
    assignments = partition(
        config.total_pages,
        config.workers,
        policies=config.policies or None,
        delay_ranges_ms=config.delay_ranges_ms or None,
        start_page=config.start_page,
    )
    for assignment in assignments:
        LOGGER.info(
            "%s: pages %d-%d, policy=%s, delay=%s",
            assignment.id,
            assignment.page_range_start,
            assignment.page_range_end,
            assignment.schedule_policy.value,
            assignment.delay_range_ms,
        )
    base_dir = Path(config.work_dir)
    launcher = SubprocessLauncher(config_path=config_path, log_dir=base_dir / "logs")
    scheduler = WorkerScheduler(assignments, config, launcher, work_dir=base_dir)
    report = scheduler.run()
    click.echo(orjson.dumps(report, option=orjson.OPT_INDENT_2).decode("utf-8"))
    if report["permanently_failed"]:
        raise SystemExit(1)


@cli.command()
@click.option("--workers", default=4, show_default=True, type=int)
@click.option("--total-pages", default=200, show_default=True, type=int)
def plan(workers: int, total_pages: int) -> None:
    """Print the assignments that ``start`` would launch."""
    for assignment in partition(total_pages, workers):
        click.echo(assignment.model_dump_json())


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
