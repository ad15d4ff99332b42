"""Persistence boundary: sinks that receive ``AggregationStore.snapshot()``."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Dict, Iterable, Optional, Protocol

import orjson

from .models import Record, SessionSummary

LOGGER = logging.getLogger(__name__)


class RecordSink(Protocol):
    """Protocol for record persistence."""

    def upsert_batch(self, records: Iterable[Record]) -> int:
        """Upsert records keyed by identity; keep the higher-confidence copy.

        Returns
        -------
        int
            Number of rows written or updated
        """
        ...

    def record_session(self, summary: SessionSummary) -> None:
        ...


class JsonlRecordSink:
    """Record sink backed by a JSON-lines file, rewritten atomically."""

    def __init__(self, path: str | Path, sessions_path: Optional[str | Path] = None) -> None:
        self.path = Path(path)
        self.sessions_path = Path(sessions_path) if sessions_path else self.path.with_suffix(".sessions.jsonl")

    def _load(self) -> Dict[str, Dict]:
        rows: Dict[str, Dict] = {}
        if not self.path.exists():
            return rows
        with self.path.open("rb") as fh:
            for line_no, line in enumerate(fh, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    row = orjson.loads(line)
                except orjson.JSONDecodeError:
                    LOGGER.warning("Skipping corrupt line %d in %s", line_no, self.path)
                    continue
                rows[row["identity"]] = row
        return rows

    def upsert_batch(self, records: Iterable[Record]) -> int:
        rows = self._load()
        written = 0
        for record in records:
            current = rows.get(record.identity)
            if current is not None and current.get("overall_confidence", 0) >= record.overall_confidence:
                continue
            rows[record.identity] = record.to_row()
            written += 1

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp_path.open("wb") as fh:
            for row in rows.values():
                fh.write(orjson.dumps(row))
                fh.write(b"\n")
        os.replace(tmp_path, self.path)
        LOGGER.info("Wrote %d records to %s (%d total)", written, self.path, len(rows))
        return written

    def record_session(self, summary: SessionSummary) -> None:
        self.sessions_path.parent.mkdir(parents=True, exist_ok=True)
        with self.sessions_path.open("ab") as fh:
            fh.write(orjson.dumps(summary.model_dump(mode="json")))
            fh.write(b"\n")
        LOGGER.info("Session %s recorded in %s", summary.session_id, self.sessions_path)
