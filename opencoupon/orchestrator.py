"""Auto-apply session: locate the field, baseline the price, test codes, keep the best."""

import asyncio
import time
from typing import Iterable, List, Optional

import structlog

from opencoupon.api import extract_hostname
from opencoupon.classifier import classify, scan_indicators
from opencoupon.errors import SessionAlreadyRunningError, SubmitTimeoutError
from opencoupon.events import AttemptEvent, CompletedEvent, EventChannel, ProgressEvent
from opencoupon.feedback import FeedbackSink
from opencoupon.interaction import HumanPacer, InteractionSimulator
from opencoupon.locator import FieldLocator
from opencoupon.models import (
    ApplierOptions,
    AttemptResult,
    CandidateCode,
    DetectionMethod,
    Outcome,
    PriceSnapshot,
    SessionResult,
    SessionState,
)
from opencoupon.prices import PriceObserver

logger = structlog.get_logger(__name__)

FIELD_NOT_FOUND = "Could not find coupon input field on this page"
PRICE_NOT_FOUND = "Failed to detect price on page"
RATE_LIMIT_SUSPECTED = "Rate limiting suspected - too many consecutive failures"


def order_candidates(candidates: Iterable[CandidateCode], max_attempts: int) -> List[CandidateCode]:
    """Historically most reliable codes first, capped at ``max_attempts``."""
    ordered = sorted(candidates, key=lambda c: c.prior_success_count, reverse=True)
    return ordered[:max_attempts]


class AutoApplier:
    """Runs one auto-apply session at a time against a page."""

    def __init__(
        self,
        page,
        locator: Optional[FieldLocator] = None,
        price_observer: Optional[PriceObserver] = None,
        simulator: Optional[InteractionSimulator] = None,
        pacer: Optional[HumanPacer] = None,
        events: Optional[EventChannel] = None,
        feedback: Optional[FeedbackSink] = None,
    ):
        self.page = page
        self.pacer = pacer or HumanPacer()
        self.locator = locator or FieldLocator(page)
        self.price_observer = price_observer or PriceObserver(page)
        self.simulator = simulator or InteractionSimulator(self.pacer)
        self.events = events or EventChannel()
        self.feedback = feedback
        self.state = SessionState.IDLE
        self._active = False
        self._cancel_requested = False

    @property
    def is_running(self) -> bool:
        return self._active

    def cancel(self) -> None:
        """Stop starting new candidates. The current step finishes first."""
        if self._active:
            logger.info("Cancellation requested")
            self._cancel_requested = True

    def _enter(self, state: SessionState) -> None:
        logger.debug("Session state", state=state.value, previous=self.state.value)
        self.state = state

    async def run(
        self,
        candidates: Iterable[CandidateCode],
        options: Optional[ApplierOptions] = None,
        input_ref=None,
        submit_ref=None,
    ) -> SessionResult:
        if self._active:
            raise SessionAlreadyRunningError()

        self._active = True
        self._cancel_requested = False
        self.state = SessionState.IDLE
        result = SessionResult()
        try:
            try:
                await self._run(result, list(candidates), options or ApplierOptions(), input_ref, submit_ref)
            except Exception as e:
                logger.exception("Auto-apply failed")
                self._failed(result, str(e) or "Unknown error occurred")
            await self._finalize(result)
            return result
        finally:
            self._active = False

    async def _run(self, result: SessionResult, candidates, options: ApplierOptions, input_ref, submit_ref) -> SessionResult:
        logger.info("Starting auto-apply", candidates=len(candidates))

        self._enter(SessionState.LOCATING)
        if self._cancel_requested:
            return self._cancelled(result)
        input_ref, submit_ref = await self._resolve_field(options, input_ref, submit_ref)
        if input_ref is None or submit_ref is None:
            return self._failed(result, FIELD_NOT_FOUND)

        self._enter(SessionState.BASELINE_PRICING)
        if self._cancel_requested:
            return self._cancelled(result)
        baseline = await self.price_observer.detect_price(options.price_selectors)
        if baseline is None:
            return self._failed(result, PRICE_NOT_FOUND)
        logger.info("Baseline price detected", price=str(baseline))

        to_test = order_candidates(candidates, options.max_attempts)
        if len(to_test) < len(candidates):
            logger.info("Testing top coupons only", testing=len(to_test), available=len(candidates))

        self._enter(SessionState.TESTING)
        simulator_failed = await self._test_all(result, to_test, options, baseline, input_ref, submit_ref)
        if simulator_failed:
            self._enter(SessionState.FAILED)
            return result

        # A cancel during the last candidate is only seen here; the page is left as is.
        if self._cancel_requested and not result.cancelled_by_user:
            result.cancelled_by_user = True
            logger.info("Auto-apply cancelled by user", tested=result.tested)

        best = result.best_attempt
        last = result.all_results[-1] if result.all_results else None
        if (
            not result.cancelled_by_user
            and best is not None
            and last is not None
            and last.candidate_id != best.candidate_id
        ):
            self._enter(SessionState.REAPPLYING)
            try:
                await self.simulator.reapply(best.code, input_ref, submit_ref)
            except Exception as e:
                logger.error("Re-applying best coupon failed", code=best.code, error=str(e))
                result.error_message = result.error_message or f"Failed to re-apply best coupon: {e}"

        if result.cancelled_by_user:
            self._enter(SessionState.CANCELLED)
        elif result.error_message:
            self._enter(SessionState.FAILED)
        else:
            self._enter(SessionState.COMPLETED)
        return result

    async def _resolve_field(self, options: ApplierOptions, input_ref, submit_ref):
        if input_ref is None:
            location = await self.locator.locate(
                options.selector_config,
                keywords=options.keywords,
                retry_attempts=options.retry_attempts,
                retry_delay_ms=options.retry_delay,
                min_confidence=options.min_confidence,
            )
            if not location.found:
                return None, None
            logger.info(
                "Coupon field detected",
                confidence=location.confidence,
                method=location.detection_method.value,
            )
            input_ref = location.input_ref
            submit_ref = submit_ref or location.submit_ref
        if submit_ref is None:
            submit_ref = await self.locator.find_submit(input_ref)
        return input_ref, submit_ref

    async def _test_all(self, result, to_test, options, baseline, input_ref, submit_ref) -> bool:
        """Candidate loop. Returns True when the simulator failed fatally."""
        consecutive_failures = 0
        total = len(to_test)

        for index, candidate in enumerate(to_test):
            if self._cancel_requested:
                result.cancelled_by_user = True
                logger.info("Auto-apply cancelled by user", tested=result.tested)
                break

            logger.info("Testing coupon", current=index + 1, total=total, code=candidate.code)
            await self.events.emit(ProgressEvent(current=index + 1, total=total, code=candidate.code))

            started = time.monotonic()
            try:
                attempt = await self._attempt(candidate, options, baseline, input_ref, submit_ref, started)
            except Exception as e:
                logger.error("Interaction failed", code=candidate.code, error=str(e))
                result.error_message = f"Failed to apply coupon {candidate.code}: {e}"
                return True

            if result.record(attempt):
                logger.info("New best coupon", code=attempt.code, saves=round(attempt.discount_amount, 2))
            consecutive_failures = 0 if attempt.success else consecutive_failures + 1
            await self.events.emit(AttemptEvent(result=attempt))

            if consecutive_failures >= options.max_consecutive_failures:
                result.error_message = RATE_LIMIT_SUSPECTED
                logger.warning(RATE_LIMIT_SUSPECTED, consecutive=consecutive_failures)
                break

            if attempt.discount_percentage >= 100:
                logger.info("100% discount found, stopping", code=attempt.code)
                break

            if index < total - 1:
                await self.pacer.pause(*options.delay_between_attempts)

        return False

    async def _attempt(self, candidate, options, baseline: PriceSnapshot, input_ref, submit_ref, started) -> AttemptResult:
        def elapsed() -> int:
            return int((time.monotonic() - started) * 1000)

        try:
            await self.simulator.apply_candidate(candidate.code, input_ref, submit_ref)
        except SubmitTimeoutError as e:
            logger.warning("Submit never enabled", code=candidate.code)
            return AttemptResult(
                candidate_id=candidate.id,
                code=candidate.code,
                price_before=baseline,
                price_after=baseline,
                outcome=Outcome.TIMEOUT,
                detection_method=DetectionMethod.TIMEOUT,
                failure_reason=str(e),
                duration_ms=elapsed(),
            )

        try:
            new_price = await self.price_observer.wait_for_price_change(
                baseline, options.timeout, options.price_selectors
            )
            indicators = await scan_indicators(self.page)
            verdict = classify(baseline, new_price, indicators)
        except Exception as e:
            logger.warning("Could not evaluate coupon", code=candidate.code, error=str(e))
            return AttemptResult(
                candidate_id=candidate.id,
                code=candidate.code,
                price_before=baseline,
                price_after=baseline,
                outcome=Outcome.FAILURE,
                detection_method=DetectionMethod.FAILURE_MESSAGE,
                failure_reason=f"Unexpected error: {e}",
                duration_ms=elapsed(),
            )

        attempt = AttemptResult(
            candidate_id=candidate.id,
            code=candidate.code,
            price_before=baseline,
            price_after=verdict.price_after,
            discount_amount=verdict.discount_amount,
            discount_percentage=verdict.discount_percentage,
            outcome=verdict.outcome,
            detection_method=verdict.detection_method,
            failure_reason=verdict.failure_reason,
            duration_ms=elapsed(),
        )
        logger.info(
            "Coupon tested",
            code=attempt.code,
            outcome=attempt.outcome.value,
            discount=round(attempt.discount_amount, 2),
            reason=attempt.failure_reason,
        )
        return attempt

    def _failed(self, result: SessionResult, message: str) -> SessionResult:
        logger.error("Auto-apply failed", error=message)
        result.error_message = message
        self._enter(SessionState.FAILED)
        return result

    def _cancelled(self, result: SessionResult) -> SessionResult:
        result.cancelled_by_user = True
        self._enter(SessionState.CANCELLED)
        return result

    async def _finalize(self, result: SessionResult) -> None:
        logger.info(
            "Auto-apply complete",
            state=self.state.value,
            tested=result.tested,
            successful=result.successful,
            failed=result.failed,
            best=result.best_attempt.code if result.best_attempt else None,
        )
        await self.events.emit(CompletedEvent(result=result))

        if self.feedback is not None and result.all_results:
            domain = extract_hostname(self.page.url) or ""
            try:
                await self.feedback.submit(result.all_results, domain)
            except Exception as e:
                logger.warning("Feedback submission failed", error=str(e))
