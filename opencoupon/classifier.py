"""Decide whether a code worked.

Price evidence wins over anything the page says. An "applied" banner with an
unchanged total is a misleading success.
"""

from typing import Optional

import structlog
from pydantic import BaseModel

from opencoupon.domutils import INDICATORS_JS
from opencoupon.models import DetectionMethod, Outcome, PageIndicators, PriceSnapshot

logger = structlog.get_logger(__name__)

SUCCESS_KEYWORDS = [
    "applied",
    "success",
    "saved",
    "discount applied",
    "coupon applied",
    "promo applied",
    "code applied",
]

FAILURE_KEYWORDS = [
    "invalid",
    "expired",
    "not valid",
    "incorrect",
    "error",
    "failed",
    "not found",
    "cannot be applied",
]

MISLEADING_SUCCESS_REASON = "No discount applied despite success message"
NO_RESPONSE_REASON = "Timeout - no response detected"


class Classification(BaseModel):
    outcome: Outcome
    detection_method: DetectionMethod
    price_after: PriceSnapshot
    discount_amount: float = 0.0
    discount_percentage: float = 0.0
    failure_reason: Optional[str] = None


def read_indicators(text: str, success_elements: int = 0, error_elements: int = 0) -> PageIndicators:
    """Success keywords first, then failure keywords, then flagged elements."""
    body = (text or "").lower()

    for keyword in SUCCESS_KEYWORDS:
        if keyword in body:
            return PageIndicators(success=True, message=keyword)

    for keyword in FAILURE_KEYWORDS:
        if keyword in body:
            return PageIndicators(success=False, message=keyword)

    if success_elements > 0:
        return PageIndicators(success=True, message="Visual success indicator")
    if error_elements > 0:
        return PageIndicators(success=False, message="Visual error indicator")

    return PageIndicators()


async def scan_indicators(page) -> PageIndicators:
    raw = await page.evaluate(INDICATORS_JS) or {}
    indicators = read_indicators(
        raw.get("text") or "",
        int(raw.get("successElements") or 0),
        int(raw.get("errorElements") or 0),
    )
    logger.debug("Page indicators", success=indicators.success, message=indicators.message)
    return indicators


def classify(price_before: PriceSnapshot, price_after: Optional[PriceSnapshot], indicators: PageIndicators) -> Classification:
    if price_after is not None and price_after.value < price_before.value:
        amount = price_before.value - price_after.value
        return Classification(
            outcome=Outcome.SUCCESS,
            detection_method=DetectionMethod.PRICE_CHANGE,
            price_after=price_after,
            discount_amount=amount,
            discount_percentage=amount / price_before.value * 100,
        )

    after = price_after or price_before

    if indicators.success:
        return Classification(
            outcome=Outcome.MISLEADING_SUCCESS,
            detection_method=DetectionMethod.SUCCESS_MESSAGE,
            price_after=after,
            failure_reason=MISLEADING_SUCCESS_REASON,
        )

    if indicators.message:
        return Classification(
            outcome=Outcome.FAILURE,
            detection_method=DetectionMethod.FAILURE_MESSAGE,
            price_after=after,
            failure_reason=indicators.message,
        )

    return Classification(
        outcome=Outcome.TIMEOUT,
        detection_method=DetectionMethod.TIMEOUT,
        price_after=after,
        failure_reason=NO_RESPONSE_REASON,
    )
