"""In-memory aggregation of harvested records with coverage bookkeeping."""
from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional

from .models import CoverageState, Record, UpsertOutcome

LOGGER = logging.getLogger(__name__)


class AggregationStore:
    """Owns the canonical identity -> Record map for one worker.

    All mutations go through a lock; ``snapshot()`` is the only read path
    handed to persistence sinks.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: Dict[str, Record] = {}
        self._state = CoverageState()
        self.upgrades = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, identity: str) -> bool:
        with self._lock:
            return identity in self._records

    def get(self, identity: str) -> Optional[Record]:
        with self._lock:
            record = self._records.get(identity)
            return record.model_copy(deep=True) if record else None

    def upsert(self, record: Record) -> UpsertOutcome:
        """Insert a record, or replace the stored one if strictly more confident."""
        if not record.identity:
            with self._lock:
                self._state.rejected += 1
            return UpsertOutcome.REJECTED

        with self._lock:
            existing = self._records.get(record.identity)
            if existing is None:
                self._records[record.identity] = record.model_copy(deep=True)
                self._state.unique_collected = len(self._records)
                self._enforce_bound()
                return UpsertOutcome.INSERTED

            self._state.duplicates_seen += 1
            if record.overall_confidence > existing.overall_confidence:
                self._records[record.identity] = record.model_copy(deep=True)
                self.upgrades += 1
            return UpsertOutcome.DUPLICATE

    def note_rejected(self, count: int = 1) -> None:
        if count <= 0:
            return
        with self._lock:
            self._state.rejected += count

    def note_page(self, page: int, empty: bool = False) -> None:
        with self._lock:
            self._state.pages_processed.add(page)
            if empty:
                self._state.consecutive_empty_pages += 1
            else:
                self._state.consecutive_empty_pages = 0

    def set_target(self, total: Optional[int], buffer: int = 0) -> None:
        with self._lock:
            self._state.target_estimate = total
            self._state.volatility_buffer = max(0, buffer)
            self._enforce_bound()

    def _enforce_bound(self) -> None:
        state = self._state
        if state.target_estimate is None:
            return
        if state.unique_collected > state.target_estimate + state.volatility_buffer:
            LOGGER.warning(
                "Collected %d unique records, above estimate %d + buffer %d; raising target",
                state.unique_collected,
                state.target_estimate,
                state.volatility_buffer,
            )
            state.target_estimate = state.unique_collected

    def coverage(self) -> CoverageState:
        with self._lock:
            return self._state.model_copy(deep=True)

    def completeness(self, last_page: Optional[int] = None) -> Dict[str, object]:
        """Coverage percentage, pages never processed and duplicate count."""
        state = self.coverage()
        seen = state.pages_processed
        upper = last_page if last_page is not None else (max(seen) if seen else 0)
        lower = min(seen) if seen else 1
        missing = [p for p in range(lower, upper + 1) if p not in seen]
        return {
            "percentage": state.percentage,
            "unique_collected": state.unique_collected,
            "target_estimate": state.target_estimate,
            "missing_pages": missing,
            "duplicates": state.duplicates_seen,
            "rejected": state.rejected,
        }

    def snapshot(self) -> List[Record]:
        with self._lock:
            return [record.model_copy(deep=True) for record in self._records.values()]
