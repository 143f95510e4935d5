from __future__ import annotations

"""Selector chains and challenge signatures for the case-status site.

The landing page has moved between a legacy form (``appReceiptNum``) and the
current React form (``#receipt_number``); both layouts stay in the chains so a
rollback on the site side keeps working. Result chains list the innermost
status container first, so the first match is the most specific markup.
"""

import re
from dataclasses import dataclass, field
from typing import Tuple

from .selector_chain import LocatorSpec, SelectorChain, chain


@dataclass(frozen=True)
class ChallengeSignatures:
    """Heuristics that identify a passive bot-mitigation interstitial."""

    title_patterns: Tuple[re.Pattern, ...] = (
        re.compile(r"just a moment", re.I),
        re.compile(r"attention required", re.I),
        re.compile(r"security check", re.I),
        re.compile(r"verify(ing)? you are (a )?human", re.I),
        re.compile(r"checking your browser", re.I),
    )
    text_pattern: str = r"Verifying you are human|Just a moment|Checking your browser|Please wait while we verify"
    dom_selectors: Tuple[str, ...] = (
        "#challenge-running",
        "#challenge-stage",
        "#cf-please-wait",
        "#cf-challenge-running",
        "iframe[src*='challenges.cloudflare.com']",
        "#turnstile-wrapper",
    )


@dataclass(frozen=True)
class CaseStatusSelectors:
    receipt_input: SelectorChain = field(
        default_factory=lambda: chain(
            "receipt_input",
            [
                LocatorSpec.css("input#receipt_number"),
                LocatorSpec.css("input[name='appReceiptNum']"),
                LocatorSpec.css("input[name='receiptNumber']"),
                LocatorSpec.css("input[id*='receipt' i]"),
                LocatorSpec.role("textbox", r"receipt"),
            ],
        )
    )
    submit_control: SelectorChain = field(
        default_factory=lambda: chain(
            "submit_control",
            [
                LocatorSpec.css("button[type='submit']"),
                LocatorSpec.css("button:has-text('Check Status')"),
                LocatorSpec.css("input[type='submit']"),
                LocatorSpec.role("button", r"check status|submit"),
            ],
        )
    )
    result_container: SelectorChain = field(
        default_factory=lambda: chain(
            "result_container",
            [
                LocatorSpec.css("div.rows.text-center"),
                LocatorSpec.css("div.current-status-sec"),
                LocatorSpec.css("div.appointment-sec"),
                LocatorSpec.css("[data-testid='case-status-result']"),
                LocatorSpec.css("div.caseStatusInfo"),
            ],
        )
    )
    dismiss_banner: SelectorChain = field(
        default_factory=lambda: chain(
            "dismiss_banner",
            [
                LocatorSpec.css("button:has-text('OK')"),
                LocatorSpec.css("button:has-text('Accept')"),
                LocatorSpec.css("button:has-text('I Agree')"),
            ],
        )
    )
    challenge: ChallengeSignatures = field(default_factory=ChallengeSignatures)


CASE_STATUS_SELECTORS = CaseStatusSelectors()

__all__ = [
    "CASE_STATUS_SELECTORS",
    "CaseStatusSelectors",
    "ChallengeSignatures",
]
