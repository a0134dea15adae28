"""Find the discount-code input and its submit control on a checkout page."""

import asyncio
import time
from typing import Callable, Dict, Hashable, Iterable, List, Optional, Tuple

import structlog
from playwright.async_api import Error as PlaywrightError

from opencoupon.domutils import (
    BUTTON_SELECTOR,
    CLOSEST_FORM_JS,
    LABEL_SELECTOR,
    NEARBY_SUBMIT_SELECTOR,
    NEXT_SIBLING_JS,
    PARENT_JS,
    SUBMIT_TYPED_SELECTOR,
    TEXT_INPUT_SELECTOR,
    describe,
    is_text_input,
    is_usable,
    is_visible,
    related,
)
from opencoupon.models import ElementInfo, FieldLocation, LocatorMethod, SelectorConfig

logger = structlog.get_logger(__name__)

DEFAULT_KEYWORDS = [
    "coupon",
    "promo",
    "promotional",
    "discount",
    "voucher",
    "code",
    "gift",
]

SUBMIT_TEXT_KEYWORDS = ("apply", "submit", "use")

CACHE_TTL_SECONDS = 60.0
MIN_CONFIDENCE = 30


def keyword_hits(info: ElementInfo, keywords: Iterable[str]) -> int:
    """Count keywords found in an input's identifying attributes."""
    attribute_text = " ".join(
        [info.id, info.name, info.placeholder, info.aria_label, info.class_name, *info.data]
    ).lower()
    return sum(1 for k in keywords if k.lower() in attribute_text)


def _id_selector(element_id: str) -> str:
    escaped = element_id.replace("\\", "\\\\").replace('"', '\\"')
    return f'[id="{escaped}"]'


class LocationCache:
    """Field-location results keyed by page URL and detection hints, expiring after ``ttl`` seconds.

    ``hints`` is any hashable summary of what shaped the detection (retailer
    selectors, keywords, threshold). Results found under different hints for
    the same URL are kept apart; ``invalidate(url)`` drops all of them.
    """

    def __init__(self, ttl: float = CACHE_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self._entries: Dict[str, Dict[Hashable, Tuple[float, FieldLocation]]] = {}

    def get(self, url: str, hints: Hashable = ()) -> FieldLocation | None:
        by_hints = self._entries.get(url)
        if not by_hints or hints not in by_hints:
            return None
        stored_at, location = by_hints[hints]
        if self.clock() - stored_at >= self.ttl:
            del by_hints[hints]
            if not by_hints:
                del self._entries[url]
            return None
        return location

    def put(self, url: str, location: FieldLocation, hints: Hashable = ()) -> None:
        self._entries.setdefault(url, {})[hints] = (self.clock(), location)

    def invalidate(self, url: Optional[str] = None) -> None:
        if url is None:
            self._entries.clear()
        else:
            self._entries.pop(url, None)

    def __len__(self) -> int:
        return sum(len(by_hints) for by_hints in self._entries.values())


class FieldLocator:
    """Runs the detection strategies in priority order and caches the outcome.

    Constructor arguments are defaults; ``locate`` accepts per-call overrides
    that apply to that call only.
    """

    def __init__(
        self,
        page,
        keywords: Optional[Iterable[str]] = None,
        retry_attempts: int = 3,
        retry_delay_ms: int = 1000,
        cache_ttl: float = CACHE_TTL_SECONDS,
        min_confidence: int = MIN_CONFIDENCE,
        cache: Optional[LocationCache] = None,
        sleep: Callable = asyncio.sleep,
    ):
        self.page = page
        self.keywords = list(keywords or DEFAULT_KEYWORDS)
        self.retry_attempts = retry_attempts
        self.retry_delay_ms = retry_delay_ms
        self.min_confidence = min_confidence
        self.cache = cache or LocationCache(ttl=cache_ttl)
        self._sleep = sleep

    @property
    def location_key(self) -> str:
        return self.page.url

    def invalidate(self, key: Optional[str] = None) -> None:
        self.cache.invalidate(key)

    @staticmethod
    def _good_enough(location: FieldLocation | None, min_confidence: int) -> bool:
        return location is not None and location.confidence >= min_confidence

    async def locate(
        self,
        selector_config: Optional[SelectorConfig] = None,
        *,
        keywords: Optional[Iterable[str]] = None,
        retry_attempts: Optional[int] = None,
        retry_delay_ms: Optional[int] = None,
        min_confidence: Optional[int] = None,
    ) -> FieldLocation:
        keywords = list(keywords or self.keywords)
        retry_attempts = self.retry_attempts if retry_attempts is None else retry_attempts
        retry_delay_ms = self.retry_delay_ms if retry_delay_ms is None else retry_delay_ms
        min_confidence = self.min_confidence if min_confidence is None else min_confidence

        key = self.location_key
        configured = selector_config or SelectorConfig()
        hints = (configured.input, configured.submit, configured.container, tuple(keywords), min_confidence)
        cached = self.cache.get(key, hints)
        if cached is not None:
            logger.debug("Returning cached field location", key=key)
            return cached

        location = await self._detect(selector_config, keywords, retry_attempts, retry_delay_ms, min_confidence)
        self.cache.put(key, location, hints)
        return location

    async def _detect(
        self,
        selector_config: Optional[SelectorConfig],
        keywords: List[str],
        retry_attempts: int,
        retry_delay_ms: int,
        min_confidence: int,
    ) -> FieldLocation:
        if selector_config is not None and not selector_config.is_empty:
            logger.debug("Trying retailer-specific selectors")
            location = await self.find_by_selector_config(selector_config)
            if self._good_enough(location, min_confidence):
                return location

        for attempt in range(retry_attempts + 1):
            if attempt:
                logger.debug("Waiting for dynamic content", attempt=attempt, delay_ms=retry_delay_ms)
                await self._sleep(retry_delay_ms / 1000)

            location = await self.find_by_attributes(keywords)
            if self._good_enough(location, min_confidence):
                return location

            location = await self.find_by_label(keywords)
            if self._good_enough(location, min_confidence):
                return location

        logger.info("No coupon field detected", url=self.page.url)
        return FieldLocation(confidence=0, detection_method=LocatorMethod.HEURISTIC)

    async def _location(self, input_ref, confidence: int, method: LocatorMethod, submit_ref=None, container_ref=None) -> FieldLocation:
        if submit_ref is None:
            submit_ref = await self.find_submit(input_ref)
        if container_ref is None:
            container_ref = await related(input_ref, CLOSEST_FORM_JS)
        location = FieldLocation(
            input_ref=input_ref,
            submit_ref=submit_ref,
            container_ref=container_ref,
            confidence=confidence,
            detection_method=method,
        )
        logger.debug("Coupon field candidate", method=method.value, confidence=confidence, has_submit=submit_ref is not None)
        return location

    async def find_by_selector_config(self, selector_config: SelectorConfig) -> FieldLocation | None:
        if not selector_config.input:
            return None
        try:
            input_ref = await self.page.query_selector(selector_config.input)
            if input_ref is None:
                return None
            info = await describe(input_ref)
            if info is None or not is_usable(info):
                return None

            submit_ref = None
            if selector_config.submit:
                submit_ref = await self.page.query_selector(selector_config.submit)
            container_ref = None
            if selector_config.container:
                container_ref = await self.page.query_selector(selector_config.container)
        except PlaywrightError as e:
            logger.debug("Error in retailer config detection", error=str(e))
            return None

        return await self._location(
            input_ref, 100, LocatorMethod.RETAILER_SPECIFIC, submit_ref=submit_ref, container_ref=container_ref
        )

    async def find_by_attributes(self, keywords: Optional[Iterable[str]] = None) -> FieldLocation | None:
        keywords = list(keywords or self.keywords)
        try:
            inputs = await self.page.query_selector_all(TEXT_INPUT_SELECTOR)
        except PlaywrightError as e:
            logger.debug("Error in attribute detection", error=str(e))
            return None

        best, best_hits = None, 0
        for candidate in inputs:
            info = await describe(candidate)
            if info is None or not is_usable(info):
                continue
            hits = keyword_hits(info, keywords)
            if hits > best_hits:
                best, best_hits = candidate, hits

        if best is None:
            return None
        return await self._location(best, 90 if best_hits > 1 else 70, LocatorMethod.ATTRIBUTE)

    async def _control_for_label(self, label, info: ElementInfo):
        if info.html_for:
            control = await self.page.query_selector(_id_selector(info.html_for))
            if control is not None:
                return control

        control = await label.query_selector(TEXT_INPUT_SELECTOR)
        if control is not None:
            return control

        sibling = await related(label, NEXT_SIBLING_JS)
        if sibling is not None:
            sibling_info = await describe(sibling)
            if sibling_info is not None and is_text_input(sibling_info):
                return sibling
        return None

    async def find_by_label(self, keywords: Optional[Iterable[str]] = None) -> FieldLocation | None:
        keywords = list(keywords or self.keywords)
        try:
            labels = await self.page.query_selector_all(LABEL_SELECTOR)
            for label in labels:
                info = await describe(label)
                if info is None:
                    continue
                text = info.text.lower()
                if not any(k.lower() in text for k in keywords):
                    continue

                control = await self._control_for_label(label, info)
                if control is None:
                    continue
                control_info = await describe(control)
                if control_info is not None and is_usable(control_info):
                    return await self._location(control, 60, LocatorMethod.LABEL)
        except PlaywrightError as e:
            logger.debug("Error in label detection", error=str(e))
        return None

    async def _first_visible(self, root, selector: str, text_keywords: Tuple[str, ...] = ()):
        for element in await root.query_selector_all(selector):
            info = await describe(element)
            if info is None or not is_visible(info):
                continue
            if text_keywords and not any(k in info.text.lower() for k in text_keywords):
                continue
            return element
        return None

    async def find_submit(self, input_ref):
        """Submit control for an input: form submit, form apply-button, then a neighbour."""
        try:
            form = await related(input_ref, CLOSEST_FORM_JS)
            if form is not None:
                submit = await self._first_visible(form, SUBMIT_TYPED_SELECTOR)
                if submit is not None:
                    return submit
                submit = await self._first_visible(form, BUTTON_SELECTOR, SUBMIT_TEXT_KEYWORDS)
                if submit is not None:
                    return submit

            parent = await related(input_ref, PARENT_JS)
            if parent is not None:
                return await self._first_visible(parent, NEARBY_SUBMIT_SELECTOR)
        except PlaywrightError as e:
            logger.debug("Error finding submit button", error=str(e))
        return None
