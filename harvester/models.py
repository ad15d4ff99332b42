"""Pydantic models shared across harvester components."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Set, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EstimateSource(str, Enum):
    """Where a catalog size reading came from."""
    PAGINATION = "pagination"
    TOTAL_COUNT_TEXT = "total_count_text"
    STRUCTURED_METADATA = "structured_metadata"
    LAST_PAGE_LINK = "last_page_link"
    EMBEDDED_STATE = "embedded_state"
    LAST_KNOWN_GOOD = "last_known_good"
    UNKNOWN = "unknown"


class SchedulePolicy(str, Enum):
    """When a worker is allowed to start."""
    CONTINUOUS = "continuous"
    OFFSET_START = "offset_start"      # half past the hour
    NIGHT_WINDOW = "night_window"      # 22:00 - 06:00
    WEEKEND_ONLY = "weekend_only"      # Saturday / Sunday


class UpsertOutcome(str, Enum):
    INSERTED = "inserted"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"


class StopReason(str, Enum):
    """Why a collection run ended."""
    STOP_REQUESTED = "stop requested"
    PAGE_CEILING = "page ceiling reached"
    EMPTY_STREAK = "too many consecutive empty pages"
    RANGE_EXHAUSTED = "assigned range exhausted"
    STRATEGY_LIMIT = "strategy page limit reached"
    TARGET_REACHED = "coverage target reached"
    NATURAL_END = "predicted natural end reached"


class CatalogEstimate(BaseModel):
    total_items: Optional[int] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    source: EstimateSource = EstimateSource.UNKNOWN
    observed_at: datetime = Field(default_factory=utcnow)

    @property
    def known(self) -> bool:
        return self.total_items is not None


class Record(BaseModel):
    """One harvested catalog item."""

    identity: str
    fields: Dict[str, Any] = Field(default_factory=dict)
    field_confidence: Dict[str, int] = Field(default_factory=dict)
    overall_confidence: int = 0
    source_page: int = 0
    captured_at: datetime = Field(default_factory=utcnow)
    derived_fields: Set[str] = Field(default_factory=set)

    @field_validator("identity")
    @classmethod
    def _strip_identity(cls, v: str) -> str:
        return v.strip()

    def to_row(self) -> Dict[str, Any]:
        """Flatten into a JSON-friendly dict for sinks."""
        row = self.model_dump(mode="json")
        row["derived_fields"] = sorted(self.derived_fields)
        return row


class CoverageState(BaseModel):
    target_estimate: Optional[int] = None
    volatility_buffer: int = 0
    unique_collected: int = 0
    duplicates_seen: int = 0
    rejected: int = 0
    pages_processed: Set[int] = Field(default_factory=set)
    consecutive_empty_pages: int = 0

    @property
    def percentage(self) -> Optional[float]:
        if not self.target_estimate:
            return None
        return self.unique_collected / self.target_estimate


class WorkerAssignment(BaseModel):
    """A contiguous page range handed to one worker process."""

    id: str
    page_range_start: int = Field(ge=1)
    page_range_end: int = Field(ge=1)
    schedule_policy: SchedulePolicy = SchedulePolicy.CONTINUOUS
    delay_range_ms: Tuple[int, int] = (30000, 45000)

    @model_validator(mode="after")
    def _check_range(self) -> "WorkerAssignment":
        if self.page_range_end < self.page_range_start:
            raise ValueError(
                f"page range {self.page_range_start}-{self.page_range_end} is empty"
            )
        low, high = self.delay_range_ms
        if low < 0 or high < low:
            raise ValueError(f"invalid delay range {self.delay_range_ms}")
        return self

    @property
    def pages(self) -> int:
        return self.page_range_end - self.page_range_start + 1


class WorkerProgress(BaseModel):
    """Progress a worker process reports through its result file."""

    assignment_id: str
    status: str = "running"
    pages_processed: int = 0
    last_page: Optional[int] = None
    unique_collected: int = 0
    target_estimate: Optional[int] = None
    error_count: int = 0
    stop_reason: Optional[StopReason] = None
    updated_at: datetime = Field(default_factory=utcnow)


class SessionSummary(BaseModel):
    session_id: str
    started_at: datetime
    finished_at: datetime
    total_collected: int = 0
    duplicates: int = 0
    rejected: int = 0
    pages_processed: int = 0
    coverage_percentage: Optional[float] = None
    duration_ms: int = 0
    stop_reason: Optional[StopReason] = None
    configuration: Dict[str, Any] = Field(default_factory=dict)
