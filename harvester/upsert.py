"""PostgreSQL sink with idempotent, confidence-monotonic upserts."""
from __future__ import annotations

import logging
import os
from typing import Callable, Iterable, Optional

import orjson
import psycopg2
from psycopg2.extensions import connection as PGConnection

from .models import Record, SessionSummary

LOGGER = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS harvested_records (
    identity TEXT PRIMARY KEY,
    fields JSONB NOT NULL,
    field_confidence JSONB NOT NULL,
    overall_confidence INTEGER NOT NULL,
    derived_fields JSONB NOT NULL DEFAULT '[]'::jsonb,
    source_page INTEGER,
    captured_at TIMESTAMPTZ NOT NULL,
    first_seen TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    last_seen TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS harvest_sessions (
    session_id TEXT PRIMARY KEY,
    started_at TIMESTAMPTZ NOT NULL,
    finished_at TIMESTAMPTZ NOT NULL,
    total_collected INTEGER NOT NULL,
    duplicates INTEGER NOT NULL,
    rejected INTEGER NOT NULL,
    pages_processed INTEGER NOT NULL,
    coverage_percentage DOUBLE PRECISION,
    duration_ms BIGINT NOT NULL,
    stop_reason TEXT,
    configuration JSONB NOT NULL
);
"""

UPSERT_RECORD_SQL = """
INSERT INTO harvested_records (
    identity, fields, field_confidence, overall_confidence,
    derived_fields, source_page, captured_at, first_seen, last_seen
)
VALUES (
    %(identity)s, %(fields)s::jsonb, %(field_confidence)s::jsonb, %(overall_confidence)s,
    %(derived_fields)s::jsonb, %(source_page)s, %(captured_at)s, NOW(), NOW()
)
ON CONFLICT (identity) DO UPDATE
SET
    fields = CASE WHEN EXCLUDED.overall_confidence > harvested_records.overall_confidence
                  THEN EXCLUDED.fields ELSE harvested_records.fields END,
    field_confidence = CASE WHEN EXCLUDED.overall_confidence > harvested_records.overall_confidence
                            THEN EXCLUDED.field_confidence ELSE harvested_records.field_confidence END,
    derived_fields = CASE WHEN EXCLUDED.overall_confidence > harvested_records.overall_confidence
                          THEN EXCLUDED.derived_fields ELSE harvested_records.derived_fields END,
    source_page = CASE WHEN EXCLUDED.overall_confidence > harvested_records.overall_confidence
                       THEN EXCLUDED.source_page ELSE harvested_records.source_page END,
    captured_at = CASE WHEN EXCLUDED.overall_confidence > harvested_records.overall_confidence
                       THEN EXCLUDED.captured_at ELSE harvested_records.captured_at END,
    overall_confidence = GREATEST(EXCLUDED.overall_confidence, harvested_records.overall_confidence),
    last_seen = NOW();
"""

INSERT_SESSION_SQL = """
INSERT INTO harvest_sessions (
    session_id, started_at, finished_at, total_collected, duplicates, rejected,
    pages_processed, coverage_percentage, duration_ms, stop_reason, configuration
)
VALUES (
    %(session_id)s, %(started_at)s, %(finished_at)s, %(total_collected)s, %(duplicates)s, %(rejected)s,
    %(pages_processed)s, %(coverage_percentage)s, %(duration_ms)s, %(stop_reason)s, %(configuration)s::jsonb
)
ON CONFLICT (session_id) DO NOTHING;
"""


def get_db_connection() -> PGConnection:
    """Return a psycopg2 connection using the DSN from the environment."""
    dsn = os.getenv("PG_DSN")
    if not dsn:
        raise RuntimeError("PG_DSN is not set")
    return psycopg2.connect(dsn)


def _json(value) -> str:
    return orjson.dumps(value).decode("utf-8")


def record_params(record: Record) -> dict:
    row = record.to_row()
    return {
        "identity": record.identity,
        "fields": _json(row["fields"]),
        "field_confidence": _json(row["field_confidence"]),
        "overall_confidence": record.overall_confidence,
        "derived_fields": _json(row["derived_fields"]),
        "source_page": record.source_page,
        "captured_at": record.captured_at,
    }


class PostgresRecordSink:
    """Record sink writing to PostgreSQL.

    Last write wins only when it carries strictly higher confidence, so
    concurrent workers can load overlapping snapshots in any order.
    """

    def __init__(self, connect: Optional[Callable[[], PGConnection]] = None) -> None:
        self._connect = connect or get_db_connection

    def ensure_schema(self) -> None:
        conn = self._connect()
        try:
            with conn.cursor() as cur:
                cur.execute(SCHEMA_SQL)
            conn.commit()
        finally:
            conn.close()

    def upsert_batch(self, records: Iterable[Record]) -> int:
        conn = self._connect()
        count = 0
        try:
            with conn.cursor() as cur:
                for record in records:
                    cur.execute(UPSERT_RECORD_SQL, record_params(record))
                    count += 1
            conn.commit()
        except psycopg2.Error:
            conn.rollback()
            raise
        finally:
            conn.close()
        LOGGER.info("Upserted %d records into harvested_records", count)
        return count

    def record_session(self, summary: SessionSummary) -> None:
        params = summary.model_dump(exclude={"configuration", "stop_reason"})
        params["configuration"] = _json(summary.model_dump(mode="json")["configuration"])
        params["stop_reason"] = summary.stop_reason.value if summary.stop_reason else None
        conn = self._connect()
        try:
            with conn.cursor() as cur:
                cur.execute(INSERT_SESSION_SQL, params)
            conn.commit()
        finally:
            conn.close()
        LOGGER.info("Session %s stored (%d records)", summary.session_id, summary.total_collected)
