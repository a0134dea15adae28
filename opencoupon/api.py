"""Client for the coupon backend: candidate codes and per-site selector hints."""

import asyncio
from typing import List, Optional
from urllib.parse import urlparse

import httpx
import structlog
from pydantic import BaseModel, Field

from opencoupon import config
from opencoupon.models import CandidateCode, SelectorConfig

logger = structlog.get_logger(__name__)

REQUEST_TIMEOUT_S = 10
MAX_RETRIES = 3
RETRY_DELAY_MS = 1000


class CouponBatch(BaseModel):
    """Candidates for one retailer plus its selector hints, if any."""

    candidates: List[CandidateCode] = Field(default_factory=list)
    retailer_name: Optional[str] = None
    selector_config: SelectorConfig = Field(default_factory=SelectorConfig)


def extract_hostname(url: str | None) -> str | None:
    try:
        host = urlparse(url or "").hostname
    except ValueError:
        return None
    return host or None


def parse_coupon_response(payload: dict) -> CouponBatch:
    candidates = []
    for item in payload.get("data") or []:
        try:
            candidates.append(CandidateCode.model_validate(item))
        except ValueError as e:
            logger.warning("Skipping malformed coupon", coupon=item.get("id"), error=str(e))

    retailer = payload.get("retailer") or {}
    selectors = retailer.get("selectorConfig") or {}
    return CouponBatch(
        candidates=candidates,
        retailer_name=retailer.get("name"),
        selector_config=SelectorConfig.model_validate(selectors),
    )


async def fetch_coupons(domain: str, client: httpx.AsyncClient | None = None) -> CouponBatch:
    """GET /coupons?domain=... with a few retries on network errors and 5xx."""
    url = f"{config.API_BASE_URL}/coupons"
    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=REQUEST_TIMEOUT_S)
    try:
        last_error: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                r = await client.get(url, params={"domain": domain})
                if r.status_code >= 500:
                    raise httpx.HTTPStatusError(f"HTTP {r.status_code}", request=r.request, response=r)
                r.raise_for_status()
                batch = parse_coupon_response(r.json())
                logger.info("Fetched coupons", domain=domain, count=len(batch.candidates))
                return batch
            except httpx.HTTPStatusError as e:
                if e.response.status_code < 500:
                    raise
                last_error = e
            except httpx.TransportError as e:
                last_error = e
            logger.warning("Coupon fetch failed", domain=domain, attempt=attempt, error=str(last_error))
            if attempt < MAX_RETRIES:
                await asyncio.sleep(RETRY_DELAY_MS * attempt / 1000)
        raise last_error
    finally:
        if owns_client:
            await client.aclose()
