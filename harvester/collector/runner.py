"""Wire renderer, extractor, estimator, store and controller into one run."""
from __future__ import annotations

import logging
import signal
import time
import uuid
from typing import Callable, Optional

from ..config import HarvestConfig
from ..models import SessionSummary, WorkerProgress
from ..persistence import RecordSink
from ..store import AggregationStore
from .browser_fetcher import BrowserRenderer, Renderer
from .controller import ControllerReport, CoverageController
from .estimator import MarketplaceEstimator
from .extractor import FieldExtractor
from .profile import ExtractionProfile, load_profile

LOGGER = logging.getLogger(__name__)


class HarvestSession:
    """One collection session over a page range.

    Parameters
    ----------
    config : HarvestConfig
        Run configuration
    sink : RecordSink, optional
        Receives the store snapshot and the session summary at the end
    profile : ExtractionProfile, optional
        Overrides ``config.profile_path``
    renderer_factory : callable, optional
        Builds an unstarted renderer; defaults to ``BrowserRenderer``
    start_page, end_page : int
        Page range for the controller
    on_progress : callable, optional
        Forwarded to the controller
    graceful_shutdown : bool
        Install SIGINT/SIGTERM handlers that stop after the current page
    """

    def __init__(
        self,
        config: HarvestConfig,
        sink: Optional[RecordSink] = None,
        profile: Optional[ExtractionProfile] = None,
        renderer_factory: Optional[Callable[[HarvestConfig], Renderer]] = None,
        start_page: int = 1,
        end_page: Optional[int] = None,
        on_progress: Optional[Callable[[WorkerProgress], None]] = None,
        assignment_id: str = "local",
        sleep: Callable[[float], None] = time.sleep,
        graceful_shutdown: bool = True,
    ) -> None:
        self.config = config
        self.sink = sink
        self.profile = profile or load_profile(config.profile_path)
        self.renderer_factory = renderer_factory or BrowserRenderer
        self.start_page = start_page
        self.end_page = end_page
        self.on_progress = on_progress
        self.assignment_id = assignment_id
        self.sleep = sleep
        self.graceful_shutdown = graceful_shutdown
        self.session_id = f"{assignment_id}-{uuid.uuid4().hex[:12]}"
        self.store = AggregationStore()
        self.controller: Optional[CoverageController] = None

    def _setup_signal_handlers(self) -> None:
        if self.graceful_shutdown:
            signal.signal(signal.SIGINT, self._handle_shutdown)
            signal.signal(signal.SIGTERM, self._handle_shutdown)

    def _handle_shutdown(self, signum, frame) -> None:
        LOGGER.info("Received shutdown signal %s, stopping after current page", signum)
        if self.controller is not None:
            self.controller.request_stop()

    def summarize(self, report: ControllerReport) -> SessionSummary:
        duration = report.finished_at - report.started_at
        return SessionSummary(
            session_id=self.session_id,
            started_at=report.started_at,
            finished_at=report.finished_at,
            total_collected=report.unique_collected,
            duplicates=report.duplicates,
            rejected=report.rejected,
            pages_processed=report.pages_processed,
            coverage_percentage=report.coverage,
            duration_ms=int(duration.total_seconds() * 1000),
            stop_reason=report.stop_reason,
            configuration=self.config.model_dump(mode="json"),
        )

    def _persist_partial(self) -> None:
        """Hand whatever was collected to the sink when a run aborts."""
        if self.sink is None or not len(self.store):
            return
        LOGGER.warning("Run aborted; persisting %d records collected so far", len(self.store))
        self.sink.upsert_batch(self.store.snapshot())

    def run(self) -> SessionSummary:
        """Run the controller to a stop condition and persist the snapshot.

        Raises
        ------
        RendererUnavailable
            If the browser cannot be started
        """
        self._setup_signal_handlers()
        renderer = self.renderer_factory(self.config)
        start = getattr(renderer, "start", None)
        if start is not None:
            start()
        completed = False
        try:
            self.controller = CoverageController(
                renderer=renderer,
                extractor=FieldExtractor(self.profile),
                estimator=MarketplaceEstimator(self.config),
                store=self.store,
                config=self.config,
                start_page=self.start_page,
                end_page=self.end_page,
                sleep=self.sleep,
                on_progress=self.on_progress,
                assignment_id=self.assignment_id,
            )
            report = self.controller.run()
            market = self.controller.estimator.report()
            LOGGER.info(
                "Marketplace: total=%s confidence=%.2f velocity=%.1f/h; %s",
                market.total_items,
                market.confidence,
                market.velocity,
                market.recommendation,
            )
            if self.controller.estimator.has_changed_since_start():
                LOGGER.warning("Catalog size drifted more than 10%% since the session started")
            completed = True
        finally:
            renderer.close()
            if not completed:
                self._persist_partial()

        summary = self.summarize(report)
        completeness = self.store.completeness(report.last_page)
        if completeness["missing_pages"]:
            LOGGER.info("Pages never processed: %s", completeness["missing_pages"])
        if self.sink is not None:
            self.sink.upsert_batch(self.store.snapshot())
            self.sink.record_session(summary)
        LOGGER.info(
            "Session %s finished: %d unique records, %d pages, stop_reason=%s",
            summary.session_id,
            summary.total_collected,
            summary.pages_processed,
            summary.stop_reason.value if summary.stop_reason else None,
        )
        return summary
