"""Tolerant parsers for numbers and URLs scraped from listing cards.

Every parser returns ``None`` for text it cannot read or for values outside
the plausible domain; callers treat that as "strategy did not match".
"""
from __future__ import annotations

import re
from typing import Any, Optional
from urllib.parse import urljoin, urlsplit, urlunsplit

MAX_MONEY = 10_000_000_000.0
MAX_MULTIPLE = 100.0
MAX_AGE_MONTHS = 600

_MONEY_RE = re.compile(
    r"(\d{1,3}(?:,\d{3})+|\d+)(?:\.(\d+))?\s*(million|thousand|mm|k|m)?\b",
    re.IGNORECASE,
)
_SUFFIX = {"k": 1_000, "thousand": 1_000, "m": 1_000_000, "mm": 1_000_000, "million": 1_000_000}
_MULTIPLE_RE = re.compile(r"(\d+(?:\.\d+)?)\s*x\b", re.IGNORECASE)
_AGE_RE = re.compile(r"(\d+(?:\.\d+)?)\s*(years?|yrs?|y|months?|mos?|mo)\b", re.IGNORECASE)
_INT_RE = re.compile(r"\d{1,3}(?:,\d{3})+|\d+")


def _safe_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_money(text: Optional[str]) -> Optional[float]:
    """Parse ``"USD $1,250"``, ``"$12.5k"``, ``"1.2M"`` into a float."""
    if not text:
        return None
    cleaned = text.replace("\xa0", " ").replace("$", " ").replace("USD", " ")
    match = _MONEY_RE.search(cleaned)
    if not match:
        return None
    whole, frac, suffix = match.groups()
    value = _safe_float(whole.replace(",", "") + (f".{frac}" if frac else ""))
    if value is None:
        return None
    if suffix:
        value *= _SUFFIX[suffix.lower()]
    if value <= 0 or value > MAX_MONEY:
        return None
    return value


def parse_multiple(text: Optional[str]) -> Optional[float]:
    """Parse ``"3.2x profit"`` into ``3.2``."""
    if not text:
        return None
    match = _MULTIPLE_RE.search(text)
    if not match:
        return None
    value = _safe_float(match.group(1))
    if value is None or value <= 0 or value > MAX_MULTIPLE:
        return None
    return value


def parse_age_months(text: Optional[str]) -> Optional[int]:
    """Parse ``"3 years"`` / ``"8 months"`` into a month count."""
    if not text:
        return None
    match = _AGE_RE.search(text)
    if not match:
        return None
    amount = _safe_float(match.group(1))
    if amount is None:
        return None
    unit = match.group(2).lower()
    months = amount * 12 if unit.startswith("y") else amount
    months = int(round(months))
    if months < 0 or months > MAX_AGE_MONTHS:
        return None
    return months


def parse_int(text: Optional[str]) -> Optional[int]:
    if text is None:
        return None
    if isinstance(text, int):
        return text
    match = _INT_RE.search(str(text))
    if not match:
        return None
    return int(match.group(0).replace(",", ""))


def parse_text(text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    value = " ".join(str(text).split())
    return value or None


def normalize_url(href: Optional[str], base_url: str = "") -> Optional[str]:
    """Absolute URL with query string, fragment and trailing slash removed."""
    if not href or not href.strip():
        return None
    absolute = urljoin(base_url.rstrip("/") + "/", href.strip()) if base_url else href.strip()
    parts = urlsplit(absolute)
    if not parts.scheme or not parts.netloc:
        return None
    path = parts.path.rstrip("/") or "/"
    return urlunsplit((parts.scheme, parts.netloc.lower(), path, "", ""))
