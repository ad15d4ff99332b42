"""Marketplace size estimation from several independent page signals."""
from __future__ import annotations

import json
import logging
import math
import re
import statistics
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Deque, List, Optional, Sequence

from ..config import HarvestConfig
from ..errors import EstimatorDisagreement
from ..models import CatalogEstimate, EstimateSource, utcnow
from .document import Document, element_text

LOGGER = logging.getLogger(__name__)

PAGINATION_SELECTOR = '.pagination-info, [class*="pagination"], nav[aria-label="Pagination"]'
JSON_LD_SELECTOR = 'script[type="application/ld+json"]'
META_COUNT_SELECTOR = 'meta[name="results-count"], meta[property="results:count"]'
LAST_PAGE_SELECTOR = 'a[href*="page="]:last-child, .pagination a:last-child'
EMBEDDED_STATE_SCRIPT = (
    "() => { const d = window.__INITIAL_STATE__ || window.__DATA__;"
    " return d && d.search ? d.search.totalResults : null; }"
)

_OF_PAGES_RE = re.compile(r"of\s+(\d+)", re.IGNORECASE)
_COUNT = r"(\d{1,3}(?:,\d{3})*|\d+)"
_TOTAL_TEXT_PATTERNS = [
    re.compile(_COUNT + r"\s*(?:results?|listings?|businesses?)\s*(?:found|available|total)", re.IGNORECASE),
    re.compile(r"showing\s*\d+\s*-\s*\d+\s*of\s*" + _COUNT, re.IGNORECASE),
    re.compile(r"total:\s*" + _COUNT, re.IGNORECASE),
]
_PAGE_PARAM_RE = re.compile(r"page=(\d+)")
_INLINE_TOTAL_RE = re.compile(r'"total":\s*(\d+)|totalResults":\s*(\d+)')


@dataclass(frozen=True)
class DetectorReading:
    count: int
    confidence: float
    source: EstimateSource
    detector: str


Detector = Callable[[Document, int], Optional[DetectorReading]]


def _to_int(text: str) -> int:
    return int(text.replace(",", ""))


def detect_pagination(document: Document, page_size: int) -> Optional[DetectorReading]:
    node = document.query_selector(PAGINATION_SELECTOR)
    match = _OF_PAGES_RE.search(element_text(node))
    if not match:
        return None
    return DetectorReading(int(match.group(1)) * page_size, 0.90, EstimateSource.PAGINATION, "pagination")


def detect_total_text(document: Document, page_size: int) -> Optional[DetectorReading]:
    text = element_text(document.query_selector("body"))
    for pattern in _TOTAL_TEXT_PATTERNS:
        match = pattern.search(text)
        if match:
            return DetectorReading(_to_int(match.group(1)), 0.95, EstimateSource.TOTAL_COUNT_TEXT, "total_text")
    return None


def detect_json_ld(document: Document, page_size: int) -> Optional[DetectorReading]:
    for node in document.query_selector_all(JSON_LD_SELECTOR):
        try:
            data = json.loads(node.text_content() or "")
        except ValueError:
            continue
        if not isinstance(data, dict):
            continue
        total = data.get("numberOfItems") or data.get("totalResults")
        if total:
            return DetectorReading(int(total), 0.98, EstimateSource.STRUCTURED_METADATA, "json_ld")
    return None


def detect_meta_count(document: Document, page_size: int) -> Optional[DetectorReading]:
    node = document.query_selector(META_COUNT_SELECTOR)
    if node is None:
        return None
    content = (node.get_attribute("content") or "").replace(",", "").strip()
    if not content.isdigit():
        return None
    return DetectorReading(int(content), 0.92, EstimateSource.STRUCTURED_METADATA, "meta_count")


def detect_last_page(document: Document, page_size: int) -> Optional[DetectorReading]:
    node = document.query_selector(LAST_PAGE_SELECTOR)
    if node is None:
        return None
    match = _PAGE_PARAM_RE.search(node.get_attribute("href") or "")
    if not match:
        return None
    return DetectorReading(int(match.group(1)) * page_size, 0.85, EstimateSource.LAST_PAGE_LINK, "last_page")


def detect_embedded_state(document: Document, page_size: int) -> Optional[DetectorReading]:
    total = document.evaluate(EMBEDDED_STATE_SCRIPT)
    if total in (None, "", 0):
        return None
    return DetectorReading(int(total), 0.96, EstimateSource.EMBEDDED_STATE, "embedded_state")


def detect_inline_script(document: Document, page_size: int) -> Optional[DetectorReading]:
    for node in document.query_selector_all("script"):
        match = _INLINE_TOTAL_RE.search(node.text_content() or "")
        if match:
            total = int(match.group(1) or match.group(2))
            return DetectorReading(total, 0.88, EstimateSource.EMBEDDED_STATE, "inline_script")
    return None


DEFAULT_DETECTORS: List[Detector] = [
    detect_pagination,
    detect_total_text,
    detect_json_ld,
    detect_meta_count,
    detect_last_page,
    detect_embedded_state,
    detect_inline_script,
]


@dataclass
class MarketReport:
    total_items: Optional[int]
    confidence: float
    velocity: float
    stable: bool
    recommendation: str
    history_size: int


class MarketplaceEstimator:
    """Estimate the catalog size and track how fast it moves.

    Parameters
    ----------
    config : HarvestConfig, optional
        Page size, plausibility bounds and volatility thresholds
    detectors : list of callables, optional
        ``(document, page_size) -> DetectorReading | None``
    clock : callable, optional
        Returns the current ``datetime`` (injectable for tests)
    """

    def __init__(
        self,
        config: Optional[HarvestConfig] = None,
        detectors: Optional[Sequence[Detector]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.config = config or HarvestConfig()
        self.detectors = list(detectors) if detectors is not None else list(DEFAULT_DETECTORS)
        self.clock = clock or utcnow
        self.history: Deque[CatalogEstimate] = deque(maxlen=self.config.history_size)
        self.initial: Optional[CatalogEstimate] = None
        self.last_changed = False

    @property
    def last_good(self) -> Optional[CatalogEstimate]:
        return self.history[-1] if self.history else None

    def read(self, document: Document) -> List[DetectorReading]:
        """Run every detector; a detector that blows up contributes nothing."""
        readings: List[DetectorReading] = []
        for detector in self.detectors:
            try:
                reading = detector(document, self.config.page_size)
            except Exception as exc:
                LOGGER.debug("Detector %s failed: %s", getattr(detector, "__name__", detector), exc)
                continue
            if reading is not None:
                readings.append(reading)
        return readings

    def _plausible(self, readings: List[DetectorReading]) -> List[DetectorReading]:
        kept = []
        for reading in readings:
            if self.config.min_plausible_total <= reading.count <= self.config.max_plausible_total:
                kept.append(reading)
            else:
                LOGGER.debug("Dropping implausible %s reading %d", reading.detector, reading.count)
        return kept

    def _diverges(self, a: int, b: int) -> bool:
        low, high = sorted((a, b))
        return low <= 0 or high / low > self.config.divergence_factor

    def _drop_outliers(self, readings: List[DetectorReading]) -> List[DetectorReading]:
        if len(readings) < 3:
            return readings
        median = statistics.median_low(r.count for r in readings)
        kept = [r for r in readings if not self._diverges(r.count, median)]
        for reading in readings:
            if reading not in kept:
                LOGGER.info(
                    "estimator_outlier_dropped detector=%s count=%d median=%d",
                    reading.detector,
                    reading.count,
                    median,
                )
        return kept

    def select(self, readings: List[DetectorReading]) -> Optional[DetectorReading]:
        """Pick the reading to trust.

        Raises
        ------
        EstimatorDisagreement
            If exactly two readings remain and they diverge
        """
        readings = self._drop_outliers(self._plausible(readings))
        if not readings:
            return None
        if len(readings) == 2 and self._diverges(readings[0].count, readings[1].count):
            raise EstimatorDisagreement(readings)
        best = max(r.confidence for r in readings)
        tied = [r for r in readings if r.confidence == best]
        previous = self.last_good.total_items if self.last_good else None
        if previous is not None and len(tied) > 1:
            tied.sort(key=lambda r: abs(r.count - previous))
        return tied[0]

    def fallback(self) -> CatalogEstimate:
        if self.last_good is None:
            return CatalogEstimate(observed_at=self.clock())
        return self.last_good.model_copy(update={"source": EstimateSource.LAST_KNOWN_GOOD})

    def estimate(self, document: Document) -> CatalogEstimate:
        try:
            chosen = self.select(self.read(document))
        except EstimatorDisagreement as exc:
            LOGGER.warning("estimator_disagreement: %s; using last known good", exc)
            return self.fallback()
        if chosen is None:
            LOGGER.info("No plausible catalog size readings; using last known good")
            return self.fallback()
        estimate = CatalogEstimate(
            total_items=chosen.count,
            confidence=chosen.confidence,
            source=chosen.source,
            observed_at=self.clock(),
        )
        self.accept(estimate)
        return estimate

    def accept(self, estimate: CatalogEstimate) -> None:
        previous = self.last_good
        self.last_changed = False
        if previous is not None and previous.total_items:
            change = abs(estimate.total_items - previous.total_items) / previous.total_items
            if change > self.config.change_threshold:
                self.last_changed = True
                LOGGER.warning(
                    "catalog_changed previous=%d current=%d change=%.1f%%",
                    previous.total_items,
                    estimate.total_items,
                    change * 100,
                )
        if self.initial is None:
            self.initial = estimate
        self.history.append(estimate)
        LOGGER.info(
            "Catalog estimate %d (confidence=%.2f, source=%s)",
            estimate.total_items,
            estimate.confidence,
            estimate.source.value,
        )

    def velocity(self) -> float:
        """Mean items/hour change across the most recent history window."""
        window = list(self.history)[-self.config.velocity_window:]
        rates = []
        for before, after in zip(window, window[1:]):
            hours = (after.observed_at - before.observed_at).total_seconds() / 3600
            if hours <= 0:
                continue
            rates.append((after.total_items - before.total_items) / hours)
        return sum(rates) / len(rates) if rates else 0.0

    def is_volatile(self) -> bool:
        return abs(self.velocity()) > self.config.volatility_threshold

    def buffer_pages(self) -> int:
        velocity = abs(self.velocity())
        if velocity <= self.config.volatility_threshold:
            return 0
        return math.ceil(velocity / self.config.page_size)

    def has_changed_since_start(self, threshold: float = 0.10) -> bool:
        if self.initial is None or self.last_good is None or not self.initial.total_items:
            return False
        change = abs(self.last_good.total_items - self.initial.total_items) / self.initial.total_items
        return change > threshold

    def report(self) -> MarketReport:
        velocity = self.velocity()
        current = self.last_good
        if abs(velocity) < 5:
            recommendation = "Marketplace is stable. Standard collection strategy recommended."
        elif abs(velocity) < 20:
            recommendation = "Marketplace is moderately active. Consider more frequent rechecks."
        else:
            recommendation = "Marketplace is highly volatile. Use aggressive collection with frequent rechecks."
        return MarketReport(
            total_items=current.total_items if current else None,
            confidence=current.confidence if current else 0.0,
            velocity=velocity,
            stable=abs(velocity) < 5,
            recommendation=recommendation,
            history_size=len(self.history),
        )
