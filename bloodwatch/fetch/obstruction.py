"""Obstruction detection on fetched pages.

The fetcher dismisses consent gates it recognises and refuses pages that
sit behind a captcha or login wall. Selectors are matched against the
parsed DOM, so the consent selector returned here is the one the browser
clicks.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from bs4 import BeautifulSoup


class ObstructionType(str, Enum):
    CONSENT_GATE = "CONSENT_GATE"
    HARD_BLOCK = "HARD_BLOCK"
    NONE = "NONE"


@dataclass
class ObstructionResult:
    obstruction_type: ObstructionType
    confidence: float
    selector: str | None = None


# Consent platforms and hand-rolled banners seen on Polish public-sector sites
CONSENT_SELECTORS = [
    "#onetrust-accept-btn-handler",
    "#CybotCookiebotDialogBodyLevelButtonLevelOptinAllowAll",
    '[id*="cookie"] [class*="accept"]',
    '[id*="consent"] [class*="accept"]',
    '[class*="cookie-banner"] button',
    '[class*="cookie-consent"] button',
    '[class*="cookies"] [class*="accept"]',
    'button[class*="accept-cookie"]',
    'button[class*="cookie-accept"]',
    '[aria-label*="akceptuj" i]',
    '[aria-label*="accept" i][aria-label*="cookie" i]',
]

HARD_BLOCK_SELECTORS = [
    '[class*="captcha"]',
    '[id*="captcha"]',
    'iframe[src*="recaptcha"]',
    'iframe[src*="hcaptcha"]',
    '[class*="login-wall"]',
    '[id*="login-gate"]',
]


def _first_match(soup: BeautifulSoup, selectors: list[str]) -> str | None:
    return next((s for s in selectors if soup.select_one(s) is not None), None)


def detect_obstruction(html: str) -> ObstructionResult:
    """Classify a page as hard-blocked, consent-gated or clear.

    Hard blocks win over consent banners: dismissing a banner on a captcha
    page does not make the data reachable.
    """
    soup = BeautifulSoup(html, "html.parser")

    blocker = _first_match(soup, HARD_BLOCK_SELECTORS)
    if blocker:
        return ObstructionResult(ObstructionType.HARD_BLOCK, confidence=0.8, selector=blocker)

    consent = _first_match(soup, CONSENT_SELECTORS)
    if consent:
        return ObstructionResult(ObstructionType.CONSENT_GATE, confidence=0.7, selector=consent)

    return ObstructionResult(ObstructionType.NONE, confidence=1.0)
