"""Per-worker coverage controller: fetch, extract, merge, decide when to stop."""
from __future__ import annotations

import logging
import math
import re
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from ..antibot.pacing import AdaptivePacer
from ..antibot.retry import RecoveryLadder, build_navigation_retry
from ..config import HarvestConfig
from ..errors import ExtractionMiss, TransientNavigationError
from ..models import CatalogEstimate, StopReason, UpsertOutcome, WorkerProgress, utcnow
from ..store import AggregationStore
from .browser_fetcher import Renderer
from .document import Document
from .estimator import MarketplaceEstimator
from .extractor import ExtractionResult, FieldExtractor

LOGGER = logging.getLogger(__name__)


class ControllerState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    EXTRACTED = "extracted"
    EMPTY = "empty"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass
class CollectionStrategy:
    name: str
    max_pages: Optional[int]
    recheck_interval: int
    # budget counts pages walked from start_page rather than catalog page numbers
    relative: bool = False


@dataclass
class ControllerReport:
    stop_reason: StopReason
    pages_processed: int
    last_page: Optional[int]
    unique_collected: int
    duplicates: int
    rejected: int
    low_confidence: int
    coverage: Optional[float]
    estimate: CatalogEstimate
    error_count: int
    failed_pages: List[int]
    strategy: str
    started_at: datetime
    finished_at: datetime


def build_page_url(start_url: str, page: int, page_param: str = "page") -> str:
    """Return ``start_url`` with its page parameter set to ``page``."""
    base = re.sub(rf"([?&]){re.escape(page_param)}=\d+(&?)", lambda m: m.group(1) if m.group(2) else "", start_url)
    base = base.rstrip("?&")
    separator = "&" if "?" in base else "?"
    return f"{base}{separator}{page_param}={page}"


def choose_strategy(
    config: HarvestConfig,
    estimate: CatalogEstimate,
    volatile: bool,
    buffer_pages: int = 0,
) -> CollectionStrategy:
    """Pick the initial page budget from what we know about the catalog.

    ``fixed`` and ``exploratory`` budgets count pages walked by this worker;
    ``standard`` and ``aggressive`` budgets are catalog page numbers.
    """
    recheck = config.volatile_recheck_interval if volatile else config.recheck_interval
    if config.fixed_pages:
        return CollectionStrategy("fixed", config.fixed_pages, recheck, relative=True)
    if not estimate.known or estimate.confidence < 0.5:
        return CollectionStrategy("exploratory", 100, recheck, relative=True)
    estimated_pages = math.ceil(estimate.total_items / config.page_size)
    if volatile:
        return CollectionStrategy("aggressive", estimated_pages + max(10, buffer_pages), recheck)
    return CollectionStrategy("standard", estimated_pages + 2, recheck)


class CoverageController:
    """Walk a page range until a stop condition holds.

    Parameters
    ----------
    renderer : Renderer
        Started page renderer
    extractor : FieldExtractor
        Record extraction for one document
    estimator : MarketplaceEstimator
        Catalog size tracker
    store : AggregationStore
        Destination of extracted records
    config : HarvestConfig
        Thresholds and pacing settings
    start_page, end_page : int
        Inclusive page range; ``end_page=None`` means open-ended
    pacer : AdaptivePacer, optional
        Delay policy (built from config when omitted)
    sleep : callable
        Injected for tests
    on_progress : callable, optional
        Receives a ``WorkerProgress`` after every page
    assignment_id : str
        Label used in progress reports
    """

    def __init__(
        self,
        renderer: Renderer,
        extractor: FieldExtractor,
        estimator: MarketplaceEstimator,
        store: AggregationStore,
        config: HarvestConfig,
        start_page: int = 1,
        end_page: Optional[int] = None,
        pacer: Optional[AdaptivePacer] = None,
        sleep: Callable[[float], None] = time.sleep,
        on_progress: Optional[Callable[[WorkerProgress], None]] = None,
        assignment_id: str = "local",
    ) -> None:
        self.renderer = renderer
        self.extractor = extractor
        self.estimator = estimator
        self.store = store
        self.config = config
        self.start_page = start_page
        self.end_page = end_page
        self.pacer = pacer or AdaptivePacer(config.delay_range_ms, config.min_delay_ms)
        self.sleep = sleep
        self.on_progress = on_progress
        self.assignment_id = assignment_id

        self.state = ControllerState.IDLE
        self.estimate = CatalogEstimate()
        self.strategy = CollectionStrategy("exploratory", 100, config.recheck_interval, relative=True)
        self.error_count = 0
        self.low_confidence = 0
        self.pages_processed = 0
        self.pages_since_recheck = 0
        self.last_page: Optional[int] = None
        self.failed_pages: List[int] = []
        self._stop_requested = False
        self._current_url: Optional[str] = None
        self._previous_url: Optional[str] = None
        self._prefetched: Optional[int] = None
        self._retrying = build_navigation_retry(
            max_attempts=config.max_retries,
            backoff_base=config.backoff_base_s,
            backoff_cap=config.backoff_cap_s,
            sleep=sleep,
        )

    def request_stop(self) -> None:
        LOGGER.info("Stop requested; finishing current page")
        self._stop_requested = True

    def page_url(self, page: int) -> str:
        return build_page_url(self.config.start_url, page, self.config.page_param)

    def _navigate(self, url: str) -> Document:
        self._retrying(
            self.renderer.navigate,
            url,
            self.config.wait_condition,
            self.config.navigation_timeout_ms,
        )
        self._previous_url, self._current_url = self._current_url, url
        return self.renderer.document()

    def refresh_estimate(self) -> CatalogEstimate:
        """Re-run the estimator on the first page and update the coverage target."""
        try:
            document = self._navigate(self.page_url(1))
        except TransientNavigationError as exc:
            self.pages_since_recheck = 0
            self.error_count += 1
            LOGGER.warning("Estimate refresh failed (%s): %s", exc.kind.value, exc)
            return self.estimate
        self._prefetched = 1
        self.estimate = self.estimator.estimate(document)
        buffer_pages = self.estimator.buffer_pages()
        self.store.set_target(self.estimate.total_items, buffer_pages * self.config.page_size)
        self.strategy = choose_strategy(
            self.config,
            self.estimate,
            self.estimator.is_volatile(),
            buffer_pages=buffer_pages,
        )
        self.pages_since_recheck = 0
        LOGGER.info(
            "Strategy %s: max_pages=%s recheck_every=%d (estimate=%s, velocity=%.1f/h)",
            self.strategy.name,
            self.strategy.max_pages,
            self.strategy.recheck_interval,
            self.estimate.total_items,
            self.estimator.velocity(),
        )
        return self.estimate

    def predicted_last_page(self) -> Optional[int]:
        if not self.estimate.known:
            return None
        return math.ceil(self.estimate.total_items / self.config.page_size) + self.estimator.buffer_pages()

    def strategy_limit(self) -> Optional[int]:
        """Last page number the current strategy allows."""
        if self.strategy.max_pages is None:
            return None
        if self.strategy.relative:
            return self.start_page + self.strategy.max_pages - 1
        return self.strategy.max_pages

    def check_stop(self, page: int) -> Optional[StopReason]:
        """Evaluate stop conditions in priority order."""
        coverage = self.store.coverage()
        if self._stop_requested:
            return StopReason.STOP_REQUESTED
        if page > self.config.page_ceiling:
            return StopReason.PAGE_CEILING
        if coverage.consecutive_empty_pages >= self.config.max_empty_pages:
            return StopReason.EMPTY_STREAK
        if self.end_page is not None and page > self.end_page:
            return StopReason.RANGE_EXHAUSTED
        limit = self.strategy_limit()
        if limit is not None and page > limit:
            return StopReason.STRATEGY_LIMIT
        percentage = coverage.percentage
        if percentage is not None and percentage >= self.config.completeness_target:
            return StopReason.TARGET_REACHED
        last = self.predicted_last_page()
        if last is not None and page > last:
            return StopReason.NATURAL_END
        return None

    def _recheck_due(self) -> bool:
        return self.pages_since_recheck >= self.strategy.recheck_interval

    def _recover(self, page: int, url: str) -> ExtractionResult:
        """Walk the recovery ladder until the page yields records."""
        ladder = RecoveryLadder()
        attempts = 0
        while True:
            step = ladder.escalate()
            if step is None:
                raise ExtractionMiss(page, attempts)
            attempts += 1
            LOGGER.info("Page %d empty; recovery step %s", page, step)
            if step == "back_forward" and self._previous_url:
                self._navigate(self._previous_url)
            document = self._navigate(url)
            result = self.extractor.extract(document, page)
            if not result.empty:
                LOGGER.info("Page %d recovered via %s", page, step)
                return result

    def _record_failure(self, page: int) -> None:
        self.error_count += 1
        self.pacer.record_failure()
        self.store.note_page(page, empty=True)

    def process_page(self, page: int) -> ControllerState:
        url = self.page_url(page)
        self.state = ControllerState.FETCHING
        first: Optional[ExtractionResult] = None
        try:
            if self._prefetched == page:
                document = self.renderer.document()
                self._previous_url, self._current_url = self._current_url, url
            else:
                document = self._navigate(url)
            self._prefetched = None
            result = first = self.extractor.extract(document, page)
            if result.empty:
                result = self._recover(page, url)
        except TransientNavigationError as exc:
            LOGGER.warning("Page %d failed after retries (%s): %s", page, exc.kind.value, exc)
            self.failed_pages.append(page)
            self._record_failure(page)
            self.state = ControllerState.FAILED
            return self.state
        except ExtractionMiss as exc:
            LOGGER.warning("%s", exc)
            if first is not None:
                self.store.note_rejected(first.rejected_identity + first.rejected_errors)
                self.low_confidence += first.rejected_confidence
            self._record_failure(page)
            self.state = ControllerState.EMPTY
            return self.state

        inserted = 0
        for record in result.records:
            if self.store.upsert(record) is UpsertOutcome.INSERTED:
                inserted += 1
        self.store.note_rejected(result.rejected_identity + result.rejected_errors)
        self.low_confidence += result.rejected_confidence
        self.store.note_page(page)
        self.pacer.record_success()
        LOGGER.info(
            "Page %d: %d new, %d duplicates, total unique %d",
            page,
            inserted,
            len(result.records) - inserted,
            len(self.store),
        )
        self.state = ControllerState.EXTRACTED
        return self.state

    def progress(self, status: str = "running", stop_reason: Optional[StopReason] = None) -> WorkerProgress:
        coverage = self.store.coverage()
        return WorkerProgress(
            assignment_id=self.assignment_id,
            status=status,
            pages_processed=self.pages_processed,
            last_page=self.last_page,
            unique_collected=coverage.unique_collected,
            target_estimate=coverage.target_estimate,
            error_count=self.error_count,
            stop_reason=stop_reason,
            updated_at=utcnow(),
        )

    def _emit(self, progress: WorkerProgress) -> None:
        if self.on_progress is not None:
            self.on_progress(progress)

    def run(self) -> ControllerReport:
        started_at = utcnow()
        LOGGER.info(
            "Coverage controller %s starting at page %d (end=%s, ceiling=%d, target=%.0f%%)",
            self.assignment_id,
            self.start_page,
            self.end_page,
            self.config.page_ceiling,
            self.config.completeness_target * 100,
        )
        self.refresh_estimate()

        page = self.start_page
        first = True
        while True:
            reason = self.check_stop(page)
            if reason is not None:
                break
            if not first:
                self.sleep(self.pacer.next_delay_seconds())
            first = False

            if self._recheck_due():
                previous = self.estimate.total_items
                self.refresh_estimate()
                LOGGER.info("Recheck before page %d: estimate %s -> %s", page, previous, self.estimate.total_items)
                reason = self.check_stop(page)
                if reason is not None:
                    break

            self.process_page(page)
            self.pages_processed += 1
            self.pages_since_recheck += 1
            self.last_page = page
            self._emit(self.progress())
            page += 1

        self.state = ControllerState.STOPPED
        coverage = self.store.coverage()
        LOGGER.info(
            "stop_reason=%s pages=%d unique=%d coverage=%s errors=%d",
            reason.value,
            self.pages_processed,
            coverage.unique_collected,
            f"{coverage.percentage:.1%}" if coverage.percentage is not None else "unknown",
            self.error_count,
        )
        self._emit(self.progress(status="finished", stop_reason=reason))
        return ControllerReport(
            stop_reason=reason,
            pages_processed=self.pages_processed,
            last_page=self.last_page,
            unique_collected=coverage.unique_collected,
            duplicates=coverage.duplicates_seen,
            rejected=coverage.rejected,
            low_confidence=self.low_confidence,
            coverage=coverage.percentage,
            estimate=self.estimate,
            error_count=self.error_count,
            failed_pages=list(self.failed_pages),
            strategy=self.strategy.name,
            started_at=started_at,
            finished_at=utcnow(),
        )
