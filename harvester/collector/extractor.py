"""Confidence-scored extraction of records from a rendered catalog page."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..errors import IdentityConflict
from ..models import Record, utcnow
from .document import Document, Element, element_text
from .parsers import normalize_url
from .profile import DEFAULT_PROFILE, ContainerPattern, ExtractionProfile, Strategy, compile_strategies

LOGGER = logging.getLogger(__name__)

# Confidence of a field found by the n-th strategy in its list.
RANK_CONFIDENCE = (100, 85, 70, 60)


@dataclass
class ExtractionResult:
    records: List[Record] = field(default_factory=list)
    containers: int = 0
    rejected_identity: int = 0
    rejected_confidence: int = 0
    rejected_errors: int = 0
    pattern: Optional[str] = None

    @property
    def empty(self) -> bool:
        return not self.records


class FieldExtractor:
    """Locate listing containers, then run per-field strategies on each one.

    Parameters
    ----------
    profile : ExtractionProfile, optional
        Selector table and weights (defaults to the built-in profile)
    """

    def __init__(self, profile: Optional[ExtractionProfile] = None) -> None:
        self.profile = profile or DEFAULT_PROFILE
        self.strategies: Dict[str, List[Strategy]] = compile_strategies(self.profile)

    def locate_containers(self, document: Document) -> Tuple[Optional[ContainerPattern], List[Element]]:
        """Return the first container pattern whose matches look like real items."""
        for pattern in self.profile.containers:
            elements = document.query_selector_all(pattern.selector)
            count = len(elements)
            if count < pattern.min_count or count > pattern.max_count:
                continue
            mean_chars = sum(len(element_text(el)) for el in elements) / count
            if mean_chars < pattern.min_text_chars:
                LOGGER.debug(
                    "Pattern %s matched %d elements but mean text is %.0f chars, skipping",
                    pattern.selector,
                    count,
                    mean_chars,
                )
                continue
            return pattern, elements
        return None, []

    def extract(self, document: Document, page_number: int = 0) -> ExtractionResult:
        pattern, containers = self.locate_containers(document)
        result = ExtractionResult(containers=len(containers), pattern=pattern.selector if pattern else None)
        if pattern is None:
            LOGGER.info("Page %d: no plausible listing containers", page_number)
            return result

        for index, container in enumerate(containers):
            try:
                record = self._extract_one(pattern, container, page_number)
            except IdentityConflict as exc:
                LOGGER.debug("Page %d container %d rejected: %s", page_number, index, exc)
                result.rejected_identity += 1
                continue
            except Exception as exc:
                # stale or detached handles fail the container, not the page
                LOGGER.warning("Page %d container %d extraction failed: %s", page_number, index, exc)
                result.rejected_errors += 1
                continue
            if record.overall_confidence < self.profile.min_confidence:
                LOGGER.debug(
                    "Page %d record %s below confidence threshold (%d < %d)",
                    page_number,
                    record.identity,
                    record.overall_confidence,
                    self.profile.min_confidence,
                )
                result.rejected_confidence += 1
                continue
            result.records.append(record)

        LOGGER.info(
            "Page %d: %d containers via %s -> %d records (%d without identity, %d low confidence, %d failed)",
            page_number,
            result.containers,
            result.pattern,
            len(result.records),
            result.rejected_identity,
            result.rejected_confidence,
            result.rejected_errors,
        )
        return result

    def _run_field(self, name: str, container: Element) -> Tuple[Optional[Any], int]:
        for rank, strategy in enumerate(self.strategies.get(name, [])):
            value = strategy(container)
            if value is not None:
                return value, RANK_CONFIDENCE[min(rank, len(RANK_CONFIDENCE) - 1)]
        return None, 0

    def _identity(self, pattern: ContainerPattern, container: Element, fields: Dict[str, Any]) -> str:
        if pattern.id_attribute:
            raw = container.get_attribute(pattern.id_attribute) or ""
            if raw.startswith(pattern.id_prefix):
                raw = raw[len(pattern.id_prefix):]
            if raw.strip():
                return raw.strip()
        url = normalize_url(fields.get(self.profile.identity_field), self.profile.base_url)
        if url:
            return url
        raise IdentityConflict("container has no id attribute and no usable URL")

    def _extract_one(self, pattern: ContainerPattern, container: Element, page_number: int) -> Record:
        fields: Dict[str, Any] = {}
        confidence: Dict[str, int] = {}
        for name in self.strategies:
            value, score = self._run_field(name, container)
            if value is not None:
                fields[name] = value
                confidence[name] = score

        identity = self._identity(pattern, container, fields)

        derived = set()
        if "value_multiple" not in fields:
            multiple = derive_multiple(fields.get("price"), fields.get("monthly_revenue"))
            if multiple is not None:
                fields["value_multiple"] = multiple
                confidence["value_multiple"] = 0
                derived.add("value_multiple")

        overall = sum(
            weight
            for name, weight in self.profile.weights.items()
            if name in fields and name not in derived
        )
        return Record(
            identity=identity,
            fields=fields,
            field_confidence=confidence,
            overall_confidence=min(overall, 100),
            source_page=page_number,
            captured_at=utcnow(),
            derived_fields=derived,
        )


def derive_multiple(price: Optional[float], monthly_revenue: Optional[float]) -> Optional[float]:
    """Annual multiple price / (monthly * 12), rounded to one decimal."""
    if not price or not monthly_revenue:
        return None
    return round(price / (monthly_revenue * 12), 1)
