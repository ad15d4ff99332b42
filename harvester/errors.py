"""Exception hierarchy for the harvester."""
from __future__ import annotations

from enum import Enum
from typing import Optional, Sequence


class HarvestError(Exception):
    """Base class for harvester errors."""


class ErrorKind(str, Enum):
    """Signature class of a navigation failure."""
    TIMEOUT = "timeout"
    NAVIGATION = "navigation"
    CHALLENGE = "challenge"
    HTTP_STATUS = "http_status"


class TransientNavigationError(HarvestError):
    """Navigation failed in a way that is worth retrying."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.NAVIGATION,
        url: Optional[str] = None,
        status: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.url = url
        self.status = status


class ExtractionMiss(HarvestError):
    """A rendered page yielded no usable records."""

    def __init__(self, page: int, attempts: int = 0) -> None:
        super().__init__(f"page {page} yielded no records after {attempts} recovery attempts")
        self.page = page
        self.attempts = attempts


class IdentityConflict(HarvestError):
    """A container had neither a canonical id nor a usable URL."""


class EstimatorDisagreement(HarvestError):
    """Detectors report incompatible catalog sizes."""

    def __init__(self, readings: Sequence) -> None:
        counts = ", ".join(f"{r.source.value}={r.count}" for r in readings)
        super().__init__(f"detectors disagree: {counts}")
        self.readings = list(readings)


class WorkerProcessFailure(HarvestError):
    """A worker process exited with a non-zero code."""

    def __init__(self, assignment_id: str, exit_code: Optional[int]) -> None:
        super().__init__(f"worker {assignment_id} exited with code {exit_code}")
        self.assignment_id = assignment_id
        self.exit_code = exit_code


class RendererUnavailable(HarvestError):
    """The browser could not be started."""
