"""CLI for a single-worker harvest run."""
from __future__ import annotations

import logging
import sys
from typing import Optional

import click

from ..config import load_config
from ..errors import HarvestError, RendererUnavailable
from ..persistence import JsonlRecordSink
from ..upsert import PostgresRecordSink
from .profile import load_profile
from .runner import HarvestSession

LOGGER = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(verbose: bool = False, log_file: Optional[str] = None) -> None:
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


@click.group()
def cli():
    """Adaptive catalog harvester."""
    pass


@cli.command()
@click.option("--start-url", default=None, help="First catalog search page")
@click.option("--page-ceiling", default=None, type=int, help="Hard upper bound on page number")
@click.option("--target", "completeness_target", default=None, type=float, help="Coverage target, e.g. 0.95")
@click.option("--headless/--headed", default=None, help="Run the browser headless (default) or visible")
@click.option("--recheck-interval", default=None, type=int, help="Pages between catalog size rechecks")
@click.option("--max-retries", default=None, type=int, help="Navigation attempts per page")
@click.option("--start-page", default=1, show_default=True, type=int)
@click.option("--end-page", default=None, type=int, help="Last page of the assigned range")
@click.option("--config", "config_path", default=None, type=click.Path(exists=True, dir_okay=False))
@click.option("--profile", "profile_path", default=None, type=click.Path(exists=True, dir_okay=False))
@click.option("--output", default="data/records.jsonl", show_default=True, help="JSON-lines output file")
@click.option("--postgres", is_flag=True, help="Also upsert into PostgreSQL (PG_DSN)")
@click.option("--log-file", default=None, help="Also write logs to this file")
@click.option("-v", "--verbose", is_flag=True)
def run(
    start_url: Optional[str],
    page_ceiling: Optional[int],
    completeness_target: Optional[float],
    headless: Optional[bool],
    recheck_interval: Optional[int],
    max_retries: Optional[int],
    start_page: int,
    end_page: Optional[int],
    config_path: Optional[str],
    profile_path: Optional[str],
    output: str,
    postgres: bool,
    log_file: Optional[str],
    verbose: bool,
) -> None:
    """Collect records until a stop condition is reached."""
    configure_logging(verbose, log_file)
    config = load_config(
        config_path,
        start_url=start_url,
        page_ceiling=page_ceiling,
        completeness_target=completeness_target,
        headless=headless,
        recheck_interval=recheck_interval,
        max_retries=max_retries,
        profile_path=profile_path,
    )
    sink = JsonlRecordSink(output)
    session = HarvestSession(
        config,
        sink=sink,
        profile=load_profile(config.profile_path),
        start_page=start_page,
        end_page=end_page,
    )
    try:
        summary = session.run()
    except RendererUnavailable as exc:
        LOGGER.error("Renderer unavailable: %s", exc)
        sys.exit(2)
    except HarvestError as exc:
        LOGGER.error("Harvest failed: %s", exc, exc_info=True)
        sys.exit(1)

    if postgres:
        pg_sink = PostgresRecordSink()
        pg_sink.ensure_schema()
        pg_sink.upsert_batch(session.store.snapshot())
        pg_sink.record_session(summary)

    click.echo(
        f"Collected {summary.total_collected} records from {summary.pages_processed} pages "
        f"(stop: {summary.stop_reason.value if summary.stop_reason else 'n/a'})"
    )


@cli.command()
@click.option("--profile", "profile_path", default=None, type=click.Path(exists=True, dir_okay=False))
def profile(profile_path: Optional[str]) -> None:
    """Validate an extraction profile and print its weight table."""
    configure_logging()
    loaded = load_profile(profile_path)
    click.echo(f"Profile: {loaded.name} (min confidence {loaded.min_confidence})")
    for field_name, weight in sorted(loaded.weights.items(), key=lambda item: -item[1]):
        strategies = len(loaded.fields.get(field_name, []))
        click.echo(f"  {field_name:<16} weight={weight:<3} strategies={strategies}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
