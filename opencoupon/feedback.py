from datetime import datetime, timezone
from typing import Iterable, List, Protocol

import httpx
import structlog

from opencoupon import config
from opencoupon.errors import FeedbackError
from opencoupon.models import AttemptResult, Outcome

logger = structlog.get_logger(__name__)

FEEDBACK_TIMEOUT_S = 20
MAX_BATCH_SIZE = 100


class FeedbackSink(Protocol):
    async def submit(self, results: List[AttemptResult], domain: str) -> int: ...


def map_failure_reason(reason: str | None) -> str:
    if not reason:
        return "other"
    r = reason.lower()
    if "expired" in r or "expiry" in r:
        return "expired"
    if "invalid" in r or "incorrect" in r:
        return "invalid"
    if "minimum" in r or "min" in r:
        return "minimum-not-met"
    if "stock" in r or "unavailable" in r:
        return "out-of-stock"
    return "other"


def is_conclusive(result: AttemptResult) -> bool:
    # A timeout says nothing about the code itself
    return result.outcome != Outcome.TIMEOUT


def to_feedback_item(result: AttemptResult, domain: str, tested_at: datetime | None = None) -> dict:
    stamp = (tested_at or datetime.now(timezone.utc)).isoformat().replace("+00:00", "Z")
    metadata = {
        "domain": domain,
        "testDurationMs": result.duration_ms,
        "detectionMethod": result.detection_method.value,
        "testedAt": stamp,
    }
    if result.success:
        metadata["discountAmount"] = round(result.discount_amount, 2)
        metadata["discountPercentage"] = min(round(result.discount_percentage, 2), 100.0)
    else:
        metadata["failureReason"] = map_failure_reason(result.failure_reason)
    return {"couponId": result.candidate_id, "success": result.success, "metadata": metadata}


def build_batches(results: Iterable[AttemptResult], domain: str) -> List[List[dict]]:
    items = [to_feedback_item(r, domain) for r in results if is_conclusive(r)]
    return [items[i:i + MAX_BATCH_SIZE] for i in range(0, len(items), MAX_BATCH_SIZE)]


class HttpFeedbackSink:
    """Posts finished attempts to the backend's batch feedback endpoint.

    Fire and forget: failed batches are logged and counted, not queued.
    """

    def __init__(self, base_url: str | None = None, enabled: bool | None = None, client: httpx.AsyncClient | None = None):
        self.base_url = (base_url or config.API_BASE_URL).rstrip("/")
        self.enabled = config.FEEDBACK_ENABLED if enabled is None else enabled
        self._client = client

    async def _post(self, client: httpx.AsyncClient, batch: List[dict]) -> int:
        r = await client.post(f"{self.base_url}/coupons/feedback/batch", json={"feedback": batch})
        if r.status_code >= 400:
            raise FeedbackError(f"HTTP {r.status_code}: {r.text[:200]}")
        body = r.json()
        if body.get("failed"):
            logger.warning("Some feedback items were rejected", failed=body.get("failed"))
        return int(body.get("processed", len(batch)))

    async def submit(self, results: List[AttemptResult], domain: str) -> int:
        if not self.enabled:
            logger.debug("Feedback disabled, skipping submission")
            return 0

        batches = build_batches(results, domain)
        if not batches:
            logger.debug("No conclusive results to submit")
            return 0

        client = self._client or httpx.AsyncClient(timeout=FEEDBACK_TIMEOUT_S)
        processed = 0
        try:
            for batch in batches:
                try:
                    processed += await self._post(client, batch)
                except (FeedbackError, httpx.HTTPError, ValueError) as e:
                    logger.warning("Batch feedback failed", items=len(batch), error=str(e))
        finally:
            if self._client is None:
                await client.aclose()

        logger.info("Feedback submitted", processed=processed, domain=domain)
        return processed
