"""Simulated human interaction with the code field.

Pauses are always randomized; tests inject a recording sleep function.
"""

import asyncio
import random
from typing import Awaitable, Callable

import structlog
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from opencoupon.errors import SubmitTimeoutError

logger = structlog.get_logger(__name__)

SUBMIT_ENABLE_TIMEOUT_MS = 3000
CHANGE_EVENTS = ("input", "change", "keyup")


class HumanPacer:
    """Uniformly random pauses in milliseconds."""

    def __init__(self, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep, rng: random.Random | None = None):
        self._sleep = sleep
        self._rng = rng or random.Random()

    def pick(self, min_ms: int, max_ms: int) -> int:
        return self._rng.randint(min_ms, max_ms)

    async def pause(self, min_ms: int, max_ms: int) -> int:
        delay = self.pick(min_ms, max_ms)
        logger.debug("Waiting before next action", delay_ms=delay)
        await self._sleep(delay / 1000)
        return delay


async def simulate_human_delay(min_ms: int, max_ms: int) -> None:
    await HumanPacer().pause(min_ms, max_ms)


class InteractionSimulator:
    """Clears, types and submits a code the way a person would."""

    def __init__(self, pacer: HumanPacer | None = None, submit_enable_timeout_ms: int = SUBMIT_ENABLE_TIMEOUT_MS):
        self.pacer = pacer or HumanPacer()
        self.submit_enable_timeout_ms = submit_enable_timeout_ms

    async def apply_candidate(self, code: str, input_ref, submit_ref) -> None:
        await input_ref.fill("")
        await input_ref.dispatch_event("input")

        await self.pacer.pause(100, 300)

        await input_ref.fill(code)
        # Pages listen on different events depending on their framework
        for event in CHANGE_EVENTS:
            await input_ref.dispatch_event(event)
        logger.debug("Entered coupon code", code=code)

        await self.pacer.pause(200, 500)

        await self.wait_until_enabled(submit_ref)
        await submit_ref.click(timeout=self.submit_enable_timeout_ms)
        logger.debug("Clicked submit button", code=code)

    async def wait_until_enabled(self, submit_ref) -> None:
        if not await submit_ref.is_disabled():
            return
        logger.info("Submit button is disabled, waiting for re-enable", timeout_ms=self.submit_enable_timeout_ms)
        try:
            await submit_ref.wait_for_element_state("enabled", timeout=self.submit_enable_timeout_ms)
        except PlaywrightTimeoutError as e:
            raise SubmitTimeoutError(self.submit_enable_timeout_ms) from e

    async def reapply(self, code: str, input_ref, submit_ref) -> None:
        """Apply the winning code again and give the page time to settle."""
        logger.info("Re-applying best coupon", code=code)
        await self.apply_candidate(code, input_ref, submit_ref)
        await self.pacer.pause(2000, 3000)
