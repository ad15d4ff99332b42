"""Minimal DOM protocols the extractor and estimator read from.

Playwright's ``Page`` satisfies ``Document`` and ``ElementHandle`` satisfies
``Element``, so live pages are passed through without wrapping.
"""
from __future__ import annotations

from typing import Any, List, Optional, Protocol


class Element(Protocol):
    def query_selector(self, selector: str) -> Optional["Element"]:
        ...

    def query_selector_all(self, selector: str) -> List["Element"]:
        ...

    def inner_text(self) -> str:
        ...

    def text_content(self) -> Optional[str]:
        ...

    def get_attribute(self, name: str) -> Optional[str]:
        ...


class Document(Protocol):
    @property
    def url(self) -> str:
        ...

    def query_selector(self, selector: str) -> Optional[Element]:
        ...

    def query_selector_all(self, selector: str) -> List[Element]:
        ...

    def evaluate(self, expression: str) -> Any:
        ...

    def content(self) -> str:
        ...


def element_text(element: Optional[Element]) -> str:
    """Return stripped visible text, falling back to textContent."""
    if element is None:
        return ""
    text = element.inner_text() or element.text_content() or ""
    return text.strip()
