"""Ordered locator fallback chains and the single resolver that walks them."""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable, Literal, Optional, Tuple

from playwright.sync_api import Error as PWError, TimeoutError as PWTimeout

from .logging_utils import _scraper_event

LocatorKind = Literal["css", "role", "text"]


@dataclass(frozen=True)
class LocatorSpec:
    """One way of finding an element on the page.

    ``css`` takes a Playwright selector string, ``role`` an ARIA role plus an
    optional accessible ``name`` pattern, ``text`` a visible-text pattern.
    Patterns are matched case-insensitively.
    """

    kind: LocatorKind
    value: str
    name: Optional[str] = None

    @classmethod
    def css(cls, selector: str) -> "LocatorSpec":
        return cls("css", selector)

    @classmethod
    def role(cls, role: str, name: Optional[str] = None) -> "LocatorSpec":
        return cls("role", role, name)

    @classmethod
    def text(cls, pattern: str) -> "LocatorSpec":
        return cls("text", pattern)

    def locate(self, page: Any) -> Any:
        """Return the first Playwright locator matching this spec on ``page``."""

        if self.kind == "css":
            return page.locator(self.value).first
        if self.kind == "role":
            if self.name:
                return page.get_by_role(self.value, name=re.compile(self.name, re.I)).first
            return page.get_by_role(self.value).first
        if self.kind == "text":
            return page.get_by_text(re.compile(self.value, re.I)).first
        raise ValueError(f"Unknown locator kind {self.kind!r}")

    def describe(self) -> str:
        if self.name:
            return f"{self.kind}:{self.value}[{self.name}]"
        return f"{self.kind}:{self.value}"


@dataclass(frozen=True)
class SelectorChain:
    """Candidates for one logical element, highest priority first."""

    label: str
    candidates: Tuple[LocatorSpec, ...]

    def __iter__(self):
        return iter(self.candidates)

    def __len__(self) -> int:
        return len(self.candidates)


@dataclass(frozen=True)
class ResolvedElement:
    spec: LocatorSpec
    locator: Any
    index: int


def chain(label: str, candidates: Iterable[LocatorSpec]) -> SelectorChain:
    return SelectorChain(label=label, candidates=tuple(candidates))


def _is_visible_now(locator: Any) -> bool:
    try:
        return bool(locator.is_visible())
    except PWError:
        return False


def any_visible(page: Any, selector_chain: SelectorChain) -> Optional[ResolvedElement]:
    """Return the first candidate visible right now, without waiting."""

    for index, spec in enumerate(selector_chain):
        try:
            locator = spec.locate(page)
        except PWError:
            continue
        if _is_visible_now(locator):
            return ResolvedElement(spec=spec, locator=locator, index=index)
    return None


def resolve_first_visible(
    page: Any,
    selector_chain: SelectorChain,
    *,
    per_candidate_timeout_ms: int,
) -> Optional[ResolvedElement]:
    """Walk ``selector_chain`` in order and return the first visible match.

    Each candidate gets at most ``per_candidate_timeout_ms`` to become visible;
    present-but-hidden candidates are skipped. Returns ``None`` when the whole
    chain is exhausted.
    """

    for index, spec in enumerate(selector_chain):
        try:
            locator = spec.locate(page)
            locator.wait_for(state="visible", timeout=per_candidate_timeout_ms)
        except PWTimeout:
            continue
        except PWError as exc:
            _scraper_event(
                "locator",
                chain=selector_chain.label,
                candidate=spec.describe(),
                error=str(exc),
            )
            continue
        _scraper_event(
            "locator",
            chain=selector_chain.label,
            candidate=spec.describe(),
            index=index,
            matched=True,
        )
        return ResolvedElement(spec=spec, locator=locator, index=index)

    _scraper_event("locator", chain=selector_chain.label, matched=False, tried=len(selector_chain))
    return None


__all__ = [
    "LocatorSpec",
    "ResolvedElement",
    "SelectorChain",
    "any_visible",
    "chain",
    "resolve_first_visible",
]
