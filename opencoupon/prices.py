"""Checkout total detection, normalization and change watching."""

import asyncio
import re
from typing import Callable, Iterable, List, Optional

import structlog
from playwright.async_api import Error as PlaywrightError

from opencoupon import config
from opencoupon.domutils import BODY_TEXT_JS, describe, is_visible
from opencoupon.models import PriceSnapshot
from opencoupon.observer import ChangeObserver, DomChangeObserver

logger = structlog.get_logger(__name__)

MUTATION_DEBOUNCE_MS = 100

# Common total selectors, most specific first
DEFAULT_PRICE_SELECTORS = [
    '[data-test="total"]',
    '[data-test="grand-total"]',
    ".total",
    ".grand-total",
    ".order-total",
    ".cart-total",
    ".checkout-total",
    '[class*="total"]',
    '[id*="total"]',
    ".price-total",
    ".final-price",
    ".summary-total",
]

CURRENCY_RE = re.compile(f"[{re.escape(config.CURRENCY_SYMBOLS)}]")
NUMBER_TOKEN_RE = re.compile(r"\d[\d.,]*")
LEADING_DIGITS_RE = re.compile(r"\d*")

# Page-text fallback patterns
CURRENCY_PATTERNS = [
    re.compile(r"\$\s*\d[\d,]*(?:\.\d{1,2})?"),
    re.compile(r"€\s*\d[\d.,]*"),
    re.compile(r"£\s*\d[\d,]*(?:\.\d{1,2})?"),
    re.compile(r"\d[\d,]*(?:\.\d{1,2})?\s*USD", re.I),
]


def _trailing_digits(text: str, sep_index: int) -> int:
    return len(LEADING_DIGITS_RE.match(text, sep_index + 1).group(0))


def parse_price(text: str | None) -> float | None:
    """Parse a price string; None when there is no number in it.

    The decimal separator is decided by position, not locale: with both
    ``.`` and ``,`` present the later one is decimal. With only one kind,
    two trailing digits (one or two for ``.``) mean decimal, anything else
    a thousands separator.
    """
    cleaned = CURRENCY_RE.sub("", re.sub(r"\s", "", text or ""))
    m = NUMBER_TOKEN_RE.search(cleaned)
    if not m:
        return None
    token = m.group(0).rstrip(".,")

    last_dot = token.rfind(".")
    last_comma = token.rfind(",")

    if last_dot != -1 and last_comma != -1:
        if last_dot > last_comma:
            token = token.replace(",", "")
        else:
            token = token.replace(".", "").replace(",", ".")
    elif last_comma != -1:
        if _trailing_digits(token, last_comma) == 2 and token.count(",") == 1:
            token = token.replace(",", ".")
        else:
            token = token.replace(",", "")
    elif last_dot != -1:
        if _trailing_digits(token, last_dot) not in (1, 2) or token.count(".") > 1:
            token = token.replace(".", "")

    try:
        return float(token)
    except ValueError:
        return None


def normalize_price(text: str | None) -> float:
    """Normalize a price string to a number.

    Handles "$1,234.56", "€1.234,56", "£99.99", "1,234". Returns 0.0 for
    unparseable input, which callers must read as "no usable price".
    """
    value = parse_price(text)
    if value is None:
        logger.warning("Failed to normalize price", text=text)
        return 0.0
    return value


def detect_currency(text: str | None) -> str:
    m = CURRENCY_RE.search(text or "")
    return m.group(0) if m else "$"


def largest_currency_amount(text: str) -> tuple[float, str] | None:
    """Largest currency-looking amount in free text, with the matched text."""
    best = None
    for pattern in CURRENCY_PATTERNS:
        for m in pattern.finditer(text or ""):
            raw = m.group(0).strip()
            value = parse_price(raw)
            if value and (best is None or value > best[0]):
                best = (value, raw)
    return best


class PriceObserver:
    """Reads the checkout total and waits for it to change."""

    def __init__(
        self,
        page,
        price_selectors: Optional[Iterable[str]] = None,
        observer_factory: Callable[[object], ChangeObserver] = DomChangeObserver,
        debounce_ms: int = MUTATION_DEBOUNCE_MS,
    ):
        self.page = page
        self.price_selectors = list(price_selectors or [])
        self.observer_factory = observer_factory
        self.debounce_ms = debounce_ms

    def _selectors(self, custom: Optional[Iterable[str]]) -> List[str]:
        ordered = list(custom or []) + self.price_selectors + DEFAULT_PRICE_SELECTORS
        return list(dict.fromkeys(ordered))

    async def read_snapshot(self, handle) -> PriceSnapshot | None:
        """Re-read one element. A parsed zero counts (full discount)."""
        info = await describe(handle)
        if info is None or not is_visible(info):
            return None
        value = parse_price(info.text)
        if value is None:
            return None
        return PriceSnapshot(
            value=value,
            raw_text=info.text,
            currency_symbol=detect_currency(info.text),
            source_ref=handle,
        )

    async def detect_price(self, custom_selectors: Optional[Iterable[str]] = None) -> PriceSnapshot | None:
        for selector in self._selectors(custom_selectors):
            try:
                elements = await self.page.query_selector_all(selector)
            except PlaywrightError as e:
                logger.debug("Price selector failed", selector=selector, error=str(e))
                continue

            for element in elements:
                snapshot = await self.read_snapshot(element)
                if snapshot and config.is_price_usable(snapshot.value):
                    logger.debug("Price detected via selector", selector=selector, text=snapshot.raw_text)
                    return snapshot

        try:
            body_text = await self.page.evaluate(BODY_TEXT_JS)
        except PlaywrightError as e:
            logger.warning("Could not read page text", error=str(e))
            body_text = ""

        found = largest_currency_amount(body_text or "")
        if found:
            value, raw = found
            logger.debug("Price detected via text scan", text=raw)
            return PriceSnapshot(value=value, raw_text=raw, currency_symbol=detect_currency(raw))

        logger.warning("Price detection failed: no price found on page")
        return None

    async def current_price(
        self,
        baseline: PriceSnapshot,
        custom_selectors: Optional[Iterable[str]] = None,
    ) -> PriceSnapshot | None:
        """Re-read the baseline's own element; scan the page only if it is gone."""
        snapshot = None
        if baseline.source_ref is not None:
            snapshot = await self.read_snapshot(baseline.source_ref)
        if snapshot is None:
            snapshot = await self.detect_price(custom_selectors)
            if snapshot is not None and baseline.source_ref is not None:
                logger.debug("Baseline element lost, using new price element", value=snapshot.value)
        return snapshot

    async def wait_for_price_change(
        self,
        baseline: PriceSnapshot,
        timeout_ms: int,
        custom_selectors: Optional[Iterable[str]] = None,
    ) -> PriceSnapshot | None:
        """Resolve with the new price once it differs from ``baseline``, or None at timeout.

        ``custom_selectors`` are used the same way as in ``detect_price`` when the
        baseline element has to be found again.
        """
        selectors = list(custom_selectors or [])
        observer = self.observer_factory(self.page)
        try:
            await observer.start(baseline.source_ref)
            return await asyncio.wait_for(self._watch(baseline, observer, selectors), timeout_ms / 1000)
        except asyncio.TimeoutError:
            logger.debug("Timeout waiting for price change", timeout_ms=timeout_ms)
            return None
        finally:
            await observer.stop()

    async def _watch(
        self, baseline: PriceSnapshot, observer: ChangeObserver, selectors: List[str]
    ) -> PriceSnapshot:
        changed = await self._changed(baseline, selectors)
        while changed is None:
            await observer.wait_for_mutation()
            await self._settle(observer)
            changed = await self._changed(baseline, selectors)
        return changed

    async def _settle(self, observer: ChangeObserver) -> None:
        # Debounce: return once no mutation arrived for debounce_ms.
        while True:
            try:
                await asyncio.wait_for(observer.wait_for_mutation(), self.debounce_ms / 1000)
            except asyncio.TimeoutError:
                return

    async def _changed(self, baseline: PriceSnapshot, selectors: List[str]) -> PriceSnapshot | None:
        current = await self.current_price(baseline, selectors)
        if current is None:
            logger.debug("Price detection failed during wait")
            return None
        if current.value != baseline.value:
            logger.debug("Price changed", before=baseline.value, after=current.value)
            return current
        return None
