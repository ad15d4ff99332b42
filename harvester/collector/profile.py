"""Extraction profile: the swappable selector/pattern table for one catalog.

A profile is plain data (loadable from YAML).  ``compile_strategies`` turns
each field's ordered ``StrategySpec`` list into pure ``(element) -> value``
functions that the extractor tries in order.
"""
from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Callable, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, model_validator

from .document import Element, element_text
from .parsers import normalize_url, parse_age_months, parse_int, parse_money, parse_multiple, parse_text

LOGGER = logging.getLogger(__name__)

Strategy = Callable[[Element], Optional[Any]]

PARSERS: Dict[str, Callable[..., Any]] = {
    "text": parse_text,
    "money": parse_money,
    "multiple": parse_multiple,
    "age_months": parse_age_months,
    "int": parse_int,
}


class ContainerPattern(BaseModel):
    """A structural guess at where listing cards live."""

    selector: str
    id_attribute: Optional[str] = None
    id_prefix: str = ""
    min_count: int = 1
    max_count: int = 200
    min_text_chars: int = 20  # mean text length; chrome elements are short


class StrategySpec(BaseModel):
    kind: Literal["selector", "attribute", "pattern", "keywords"]
    selector: Optional[str] = None
    attribute: Optional[str] = None
    pattern: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)
    parse: Literal["text", "money", "multiple", "age_months", "int", "url"] = "text"
    require: Optional[str] = None   # substring the text must contain
    exclude: Optional[str] = None   # substring that disqualifies the text
    split: Optional[str] = None     # keep the part before the first match
    collect_all: bool = False       # keywords: return every hit as a list

    @model_validator(mode="after")
    def _check_kind(self) -> "StrategySpec":
        if self.kind == "selector" and not self.selector:
            raise ValueError("selector strategy needs a selector")
        if self.kind == "attribute" and not self.attribute:
            raise ValueError("attribute strategy needs an attribute")
        if self.kind == "pattern" and not self.pattern:
            raise ValueError("pattern strategy needs a pattern")
        if self.kind == "keywords" and not self.keywords:
            raise ValueError("keywords strategy needs keywords")
        return self


class ExtractionProfile(BaseModel):
    name: str = "default"
    base_url: str = ""
    containers: List[ContainerPattern]
    fields: Dict[str, List[StrategySpec]]
    identity_field: str = "url"
    weights: Dict[str, int]
    min_confidence: int = 40

    @model_validator(mode="after")
    def _check_weights(self) -> "ExtractionProfile":
        unknown = set(self.weights) - set(self.fields) - {"value_multiple"}
        if unknown:
            raise ValueError(f"weights reference unknown fields: {sorted(unknown)}")
        if any(w < 0 for w in self.weights.values()):
            raise ValueError("weights must be non-negative")
        return self


def _parse_value(spec: StrategySpec, raw: Optional[str], base_url: str) -> Optional[Any]:
    if raw is None:
        return None
    if spec.parse == "url":
        return normalize_url(raw, base_url)
    return PARSERS[spec.parse](raw)


def _shape_text(spec: StrategySpec, text: str, regex: Optional[re.Pattern]) -> Optional[str]:
    if not text:
        return None
    if spec.require and spec.require not in text:
        return None
    if spec.exclude and spec.exclude in text:
        return None
    if regex is not None:
        match = regex.search(text)
        if not match:
            return None
        text = match.group(1) if match.groups() else match.group(0)
    if spec.split:
        text = re.split(spec.split, text, maxsplit=1)[0]
    return text.strip() or None


def compile_strategy(spec: StrategySpec, base_url: str = "") -> Strategy:
    """Turn one StrategySpec into a pure function of a container element."""
    regex = re.compile(spec.pattern, re.IGNORECASE) if spec.pattern else None

    if spec.kind == "selector":
        def by_selector(element: Element) -> Optional[Any]:
            for node in element.query_selector_all(spec.selector):
                value = _parse_value(spec, _shape_text(spec, element_text(node), regex), base_url)
                if value is not None:
                    return value
            return None
        return by_selector

    if spec.kind == "attribute":
        def by_attribute(element: Element) -> Optional[Any]:
            node = element.query_selector(spec.selector) if spec.selector else element
            if node is None:
                return None
            raw = node.get_attribute(spec.attribute)
            if raw is None:
                return None
            return _parse_value(spec, _shape_text(spec, raw, regex), base_url)
        return by_attribute

    if spec.kind == "pattern":
        def by_pattern(element: Element) -> Optional[Any]:
            return _parse_value(spec, _shape_text(spec, element_text(element), regex), base_url)
        return by_pattern

    def by_keywords(element: Element) -> Optional[Any]:
        if spec.selector:
            texts = [element_text(node) for node in element.query_selector_all(spec.selector)]
        else:
            texts = [element_text(element)]
        hits: List[str] = []
        for keyword in spec.keywords:
            if any(keyword in text for text in texts):
                if not spec.collect_all:
                    return keyword
                hits.append(keyword)
        return hits or None
    return by_keywords


def compile_strategies(profile: ExtractionProfile) -> Dict[str, List[Strategy]]:
    return {
        field: [compile_strategy(spec, profile.base_url) for spec in specs]
        for field, specs in profile.fields.items()
    }


def _spec(**kwargs: Any) -> StrategySpec:
    return StrategySpec(**kwargs)


# "1,250", "12.5k", "1.2M"
_AMOUNT = r"(\d[\d,]*(?:\.\d+)?(?:\s?[kKmM]\b)?)"

CATEGORY_KEYWORDS = ["SaaS", "Content", "Ecommerce", "App", "Service", "Blog", "Subscription"]
BADGE_KEYWORDS = [
    "Verified",
    "Managed by Flippa",
    "Sponsored",
    "Editor's Choice",
    "Super Seller",
    "Broker",
    "Premium",
    "Featured",
    "Hot",
]

DEFAULT_PROFILE = ExtractionProfile(
    name="flippa",
    base_url="https://flippa.com",
    containers=[
        ContainerPattern(selector='div[id^="listing-"]', id_attribute="id", id_prefix="listing-"),
        ContainerPattern(selector="[data-listing-id]", id_attribute="data-listing-id"),
        ContainerPattern(selector='div[class*="listing-card"]'),
        ContainerPattern(selector="article"),
    ],
    fields={
        "url": [
            _spec(kind="attribute", selector='a[href^="/"]', attribute="href", parse="url"),
            _spec(kind="attribute", selector="a[href]", attribute="href", parse="url"),
        ],
        "title": [
            _spec(kind="selector", selector="p.tw-text-gray-900", split=r"[,.]"),
            _spec(kind="selector", selector='a[href^="/"]', exclude="View Listing"),
            _spec(kind="selector", selector='h3, h4, [class*="heading"]'),
        ],
        "price": [
            _spec(kind="selector", selector="span.tw-text-xl", require="$", exclude="p/mo", parse="money"),
            _spec(kind="selector", selector='span[class*="price"], div[class*="price"], p[class*="price"]',
                  require="$", exclude="p/mo", parse="money"),
            _spec(kind="pattern", pattern=_AMOUNT.join([r"USD\s*\$?", r"(?![\d,]|\.\d|\s*p/mo)"]), parse="money"),
            _spec(kind="pattern", pattern=_AMOUNT.join([r"Price:\s*\$?", ""]), parse="money"),
        ],
        "monthly_revenue": [
            _spec(kind="pattern", pattern=_AMOUNT.join([r"\$?", r"\s*p/mo"]), parse="money"),
            _spec(kind="pattern", pattern=_AMOUNT.join([r"\$?", r"\s*/\s*month"]), parse="money"),
            _spec(kind="pattern", pattern=_AMOUNT.join([r"monthly[^$\d]*\$?", ""]), parse="money"),
        ],
        "value_multiple": [
            _spec(kind="pattern", pattern=r"(\d+(?:\.\d+)?x)\s*(?:profit|revenue|monthly)", parse="multiple"),
        ],
        "category": [
            _spec(kind="keywords", selector='div.tw-text-gray-800, span[class*="type"], div[class*="category"]',
                  keywords=CATEGORY_KEYWORDS),
            _spec(kind="keywords", keywords=CATEGORY_KEYWORDS),
        ],
        "badges": [
            _spec(kind="keywords", keywords=BADGE_KEYWORDS, collect_all=True),
        ],
        "age_months": [
            _spec(kind="pattern", pattern=r"\bage[:\s]*(\d+(?:\.\d+)?\s*(?:years?|yrs?|months?|mos?))", parse="age_months"),
            _spec(kind="pattern", pattern=r"(\d+(?:\.\d+)?\s*(?:years?|yrs?))\s*old", parse="age_months"),
        ],
    },
    identity_field="url",
    weights={
        "title": 20,
        "price": 20,
        "monthly_revenue": 20,
        "value_multiple": 10,
        "category": 10,
        "badges": 10,
        "age_months": 10,
    },
    min_confidence=40,
)


def load_profile(path: Optional[str | Path] = None) -> ExtractionProfile:
    """Load a profile from YAML, or return the built-in default."""
    if not path:
        return DEFAULT_PROFILE
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("profile must be a mapping")
    profile = ExtractionProfile(**data)
    LOGGER.info(
        "Loaded extraction profile %s (%d container patterns, %d fields)",
        profile.name,
        len(profile.containers),
        len(profile.fields),
    )
    return profile
