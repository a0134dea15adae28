"""Tests for the auto-apply session."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from fakes import FakeCheckout, FakeElement
from opencoupon.classifier import MISLEADING_SUCCESS_REASON
from opencoupon.domutils import SUBMIT_TYPED_SELECTOR, TEXT_INPUT_SELECTOR
from opencoupon.errors import SessionAlreadyRunningError
from opencoupon.events import AttemptEvent, CompletedEvent, ProgressEvent
from opencoupon.locator import DEFAULT_KEYWORDS
from opencoupon.models import (
    ApplierOptions,
    CandidateCode,
    DetectionMethod,
    Outcome,
    SessionState,
)
from opencoupon.orchestrator import (
    FIELD_NOT_FOUND,
    PRICE_NOT_FOUND,
    RATE_LIMIT_SUSPECTED,
    order_candidates,
)


def _code(code: str, successes: int = 0) -> CandidateCode:
    return CandidateCode(id=f"id-{code}", code=code, prior_success_count=successes)


def _options(**overrides) -> ApplierOptions:
    values = {"timeout": 30, "retry_attempts": 0}
    values.update(overrides)
    return ApplierOptions(**values)


async def _run(checkout: FakeCheckout, candidates, options=None, applier=None):
    applier = applier or checkout.applier()
    result = await applier.run(
        candidates, options or _options(), input_ref=checkout.input, submit_ref=checkout.button
    )
    return applier, result


def _record_events(applier):
    events = []
    applier.events.subscribe(events.append)
    return events


class TestOrderCandidates:
    """Tests for candidate prioritization."""

    def test_sorted_by_prior_success_and_truncated(self) -> None:
        candidates = [_code("A", 1), _code("B", 9), _code("C", 1), _code("D", 4)]

        ordered = order_candidates(candidates, 3)

        assert [c.code for c in ordered] == ["B", "D", "A"]

    def test_ties_keep_input_order(self) -> None:
        candidates = [_code(f"C{i}") for i in range(4)]

        assert order_candidates(candidates, 10) == candidates


class TestSessionOutcomes:
    """Tests for whole-session behavior against a scripted checkout."""

    @pytest.mark.asyncio
    async def test_price_drop_is_recorded_as_best(self) -> None:
        """Test that a $100 -> $80 drop yields a 20% successful attempt."""
        checkout = FakeCheckout(prices={"SAVE20": "$80.00"})

        applier, result = await _run(checkout, [_code("SAVE20")])

        attempt = result.all_results[0]
        assert attempt.outcome == Outcome.SUCCESS
        assert attempt.detection_method == DetectionMethod.PRICE_CHANGE
        assert attempt.price_before.value == 100.0
        assert attempt.price_after.value == 80.0
        assert attempt.discount_amount == pytest.approx(20.0)
        assert attempt.discount_percentage == pytest.approx(20.0)
        assert result.best_attempt == attempt
        assert (result.tested, result.successful, result.failed) == (1, 1, 0)
        assert applier.state == SessionState.COMPLETED
        assert checkout.submitted == ["SAVE20"]

    @pytest.mark.asyncio
    async def test_no_baseline_price(self) -> None:
        """Test that a page without a total fails before testing any code."""
        checkout = FakeCheckout()
        checkout.page.selectors.clear()

        applier, result = await _run(checkout, [_code("A"), _code("B")])

        assert result.tested == 0
        assert result.all_results == []
        assert result.error_message == PRICE_NOT_FOUND
        assert applier.state == SessionState.FAILED
        assert checkout.submitted == []

    @pytest.mark.asyncio
    async def test_success_banner_without_price_drop(self) -> None:
        """Test that an "applied" message with an unchanged total is misleading."""
        checkout = FakeCheckout(messages={"FAKE": "Coupon applied!"})

        _, result = await _run(checkout, [_code("FAKE")])

        attempt = result.all_results[0]
        assert attempt.outcome == Outcome.MISLEADING_SUCCESS
        assert attempt.detection_method == DetectionMethod.SUCCESS_MESSAGE
        assert attempt.failure_reason == MISLEADING_SUCCESS_REASON
        assert result.best_attempt is None
        assert result.failed == 1

    @pytest.mark.asyncio
    async def test_error_banner_is_failure(self) -> None:
        checkout = FakeCheckout(messages={"BAD": "Sorry, this code is invalid"})

        _, result = await _run(checkout, [_code("BAD")])

        assert result.all_results[0].outcome == Outcome.FAILURE
        assert result.all_results[0].failure_reason == "invalid"

    @pytest.mark.asyncio
    async def test_silent_page_is_timeout(self) -> None:
        checkout = FakeCheckout()

        _, result = await _run(checkout, [_code("NOTHING")])

        assert result.all_results[0].outcome == Outcome.TIMEOUT
        assert result.all_results[0].detection_method == DetectionMethod.TIMEOUT

    @pytest.mark.asyncio
    async def test_counts_and_best_are_consistent(self) -> None:
        """Test that counters, results and best attempt agree after a mixed run."""
        checkout = FakeCheckout(prices={"A": "$90.00", "B": "$70.00", "D": "$85.00"})
        candidates = [_code("A"), _code("B"), _code("C"), _code("D")]

        _, result = await _run(checkout, candidates)

        assert result.tested == len(result.all_results) == 4
        assert result.successful + result.failed == result.tested
        assert result.successful == 3
        winners = [r for r in result.all_results if r.success]
        assert result.best_attempt.code == "B"
        assert all(result.best_attempt.discount_amount >= r.discount_amount for r in winners)

    @pytest.mark.asyncio
    async def test_rerendered_total_found_with_session_selectors(self) -> None:
        """Test that a total replaced on submit is re-read through the session's price selectors."""
        checkout = FakeCheckout()
        checkout.page.selectors.clear()
        checkout.page.selectors["#my-total"] = [checkout.total]

        def rerender(_button):
            checkout.submitted.append(checkout.input.value)
            checkout.total.detached = True
            checkout.page.selectors["#my-total"] = [FakeElement("div", "$80.00")]
            checkout.observer.notify()

        checkout.button.on_click = rerender

        _, result = await _run(checkout, [_code("SAVE20")], _options(price_selectors=["#my-total"]))

        attempt = result.all_results[0]
        assert attempt.outcome == Outcome.SUCCESS
        assert attempt.price_after.value == 80.0
        assert attempt.discount_amount == pytest.approx(20.0)


class TestSessionFlow:
    """Tests for ordering, limits, early exit and re-application."""

    @pytest.mark.asyncio
    async def test_historically_better_code_tried_first(self) -> None:
        checkout = FakeCheckout()
        applier = checkout.applier()
        events = _record_events(applier)

        await _run(checkout, [_code("LOW", 1), _code("HIGH", 9)], applier=applier)

        progress = [e for e in events if isinstance(e, ProgressEvent)]
        assert [e.code for e in progress] == ["HIGH", "LOW"]
        assert [(e.current, e.total) for e in progress] == [(1, 2), (2, 2)]
        assert checkout.submitted == ["HIGH", "LOW"]

    @pytest.mark.asyncio
    async def test_max_attempts_limits_testing(self) -> None:
        """Test that only the first max_attempts codes are tried."""
        candidates = [_code(f"C{i}") for i in range(30)]
        checkout = FakeCheckout(prices={c.code: "$90.00" for c in candidates})

        _, result = await _run(checkout, candidates, _options(max_attempts=5))

        assert result.tested == 5
        assert [r.code for r in result.all_results] == ["C0", "C1", "C2", "C3", "C4"]

    @pytest.mark.asyncio
    async def test_circuit_breaker(self) -> None:
        """Test that five failures in a row stop the session."""
        candidates = [_code(f"BAD{i}") for i in range(8)]
        checkout = FakeCheckout(messages={c.code: "Invalid code" for c in candidates})

        applier, result = await _run(checkout, candidates)

        assert result.tested == 5
        assert result.failed == 5
        assert result.error_message == RATE_LIMIT_SUSPECTED
        assert applier.state == SessionState.FAILED
        assert len(result.all_results) == 5

    @pytest.mark.asyncio
    async def test_success_resets_failure_streak(self) -> None:
        codes = ["F1", "F2", "F3", "F4", "WIN", "F5", "F6", "F7", "F8"]
        checkout = FakeCheckout(prices={"WIN": "$90.00"}, messages={c: "Invalid code" for c in codes if c != "WIN"})

        _, result = await _run(checkout, [_code(c) for c in codes])

        assert result.tested == 9
        assert result.error_message is None

    @pytest.mark.asyncio
    async def test_breaker_threshold_is_configurable(self) -> None:
        candidates = [_code(f"BAD{i}") for i in range(4)]
        checkout = FakeCheckout()

        _, result = await _run(checkout, candidates, _options(max_consecutive_failures=2))

        assert result.tested == 2
        assert result.error_message == RATE_LIMIT_SUSPECTED

    @pytest.mark.asyncio
    async def test_stops_at_full_discount(self) -> None:
        checkout = FakeCheckout(prices={"FREE": "$0.00", "HALF": "$50.00"})

        applier, result = await _run(checkout, [_code("FREE", 5), _code("HALF")])

        assert result.tested == 1
        assert result.best_attempt.code == "FREE"
        assert result.best_attempt.discount_percentage == pytest.approx(100.0)
        assert applier.state == SessionState.COMPLETED

    @pytest.mark.asyncio
    async def test_best_code_reapplied_when_not_last(self) -> None:
        """Test that the winning code is re-entered after later codes were tried."""
        checkout = FakeCheckout(prices={"GOOD": "$90.00"})

        applier, result = await _run(checkout, [_code("GOOD", 3), _code("BAD")])

        assert checkout.submitted == ["GOOD", "BAD", "GOOD"]
        assert checkout.input.value == "GOOD"
        assert result.tested == 2
        assert applier.state == SessionState.COMPLETED

    @pytest.mark.asyncio
    async def test_no_reapply_when_best_is_last(self) -> None:
        checkout = FakeCheckout(prices={"GOOD": "$90.00"})

        await _run(checkout, [_code("BAD", 3), _code("GOOD")])

        assert checkout.submitted == ["BAD", "GOOD"]

    @pytest.mark.asyncio
    async def test_pacing_between_candidates_only(self) -> None:
        """Test that the inter-candidate delay is used between codes, not after the last."""
        checkout = FakeCheckout()

        await _run(checkout, [_code("A"), _code("B"), _code("C")])

        between = [d for d in checkout.pacer.delays if d >= 2.0]
        assert len(between) == 2
        assert all(2.0 <= d <= 4.0 for d in between)


class TestSessionControl:
    """Tests for cancellation, re-entrancy and error handling."""

    @pytest.mark.asyncio
    async def test_cancel_stops_before_next_candidate(self) -> None:
        checkout = FakeCheckout()
        applier = checkout.applier()
        events = _record_events(applier)

        def cancel_after_first(event):
            if isinstance(event, AttemptEvent):
                applier.cancel()

        applier.events.subscribe(cancel_after_first)

        _, result = await _run(checkout, [_code("A"), _code("B"), _code("C")], applier=applier)

        assert result.tested == 1
        assert result.cancelled_by_user is True
        assert applier.state == SessionState.CANCELLED
        assert sum(isinstance(e, CompletedEvent) for e in events) == 1

    @pytest.mark.asyncio
    async def test_cancel_during_last_candidate_skips_reapply(self) -> None:
        """Test that a cancel arriving while the last code is tested leaves the page alone."""
        checkout = FakeCheckout(prices={"GOOD": "$90.00"})
        applier = checkout.applier()

        def cancel_on_last(event):
            if isinstance(event, ProgressEvent) and event.current == event.total:
                applier.cancel()

        applier.events.subscribe(cancel_on_last)

        _, result = await _run(checkout, [_code("GOOD", 3), _code("BAD")], applier=applier)

        assert checkout.submitted == ["GOOD", "BAD"]
        assert result.tested == 2
        assert result.best_attempt.code == "GOOD"
        assert result.cancelled_by_user is True
        assert applier.state == SessionState.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_when_idle_is_ignored(self) -> None:
        checkout = FakeCheckout()
        applier = checkout.applier()
        applier.cancel()

        _, result = await _run(checkout, [_code("A")], applier=applier)

        assert result.cancelled_by_user is False
        assert result.tested == 1

    @pytest.mark.asyncio
    async def test_second_run_rejected_while_active(self) -> None:
        checkout = FakeCheckout()
        applier = checkout.applier()

        first = asyncio.create_task(_run(checkout, [_code("SLOW")], _options(timeout=200), applier=applier))
        await asyncio.sleep(0.05)
        assert applier.is_running

        with pytest.raises(SessionAlreadyRunningError):
            await applier.run([_code("OTHER")], _options())

        _, result = await first
        assert result.tested == 1
        assert not applier.is_running

    @pytest.mark.asyncio
    async def test_runs_again_after_completion(self) -> None:
        checkout = FakeCheckout(prices={"A": "$90.00"})
        applier = checkout.applier()

        await _run(checkout, [_code("A")], applier=applier)
        _, second = await _run(checkout, [_code("A")], applier=applier)

        assert second.tested == 1

    @pytest.mark.asyncio
    async def test_field_not_found(self) -> None:
        checkout = FakeCheckout()
        applier = checkout.applier()

        result = await applier.run([_code("A")], _options())

        assert result.error_message == FIELD_NOT_FOUND
        assert result.tested == 0
        assert applier.state == SessionState.FAILED

    @pytest.mark.asyncio
    async def test_field_located_on_page(self) -> None:
        """Test that the input and its form submit are found when not given."""
        checkout = FakeCheckout(prices={"A": "$90.00"})
        checkout.input.form = FakeElement("form", queries={SUBMIT_TYPED_SELECTOR: [checkout.button]})
        checkout.page.selectors[TEXT_INPUT_SELECTOR] = [checkout.input]
        applier = checkout.applier()

        result = await applier.run([_code("A")], _options())

        assert result.successful == 1
        assert checkout.submitted == ["A"]

    @pytest.mark.asyncio
    async def test_session_keywords_do_not_carry_over(self) -> None:
        """Test that one session's keywords and threshold do not change the next session's detection."""
        checkout = FakeCheckout(prices={"A": "$90.00"})
        gutschein = FakeElement("input", type="text", name="gutschein")
        form = FakeElement("form", queries={SUBMIT_TYPED_SELECTOR: [checkout.button]})
        checkout.input.form = form
        gutschein.form = form
        checkout.page.selectors[TEXT_INPUT_SELECTOR] = [gutschein, checkout.input]
        applier = checkout.applier()

        await applier.run([_code("A")], _options(keywords=["gutschein"], min_confidence=50))

        assert gutschein.value == "A"
        assert checkout.input.value == ""

        result = await applier.run([_code("A")], _options())

        assert checkout.input.value == "A"
        assert result.successful == 1
        assert applier.locator.keywords == DEFAULT_KEYWORDS
        assert applier.locator.min_confidence == 30

    @pytest.mark.asyncio
    async def test_submit_never_enabled_is_timeout(self) -> None:
        checkout = FakeCheckout()
        checkout.button.disabled = True

        _, result = await _run(checkout, [_code("A"), _code("B")])

        assert result.tested == 2
        assert all(r.outcome == Outcome.TIMEOUT for r in result.all_results)
        assert "did not re-enable" in result.all_results[0].failure_reason

    @pytest.mark.asyncio
    async def test_broken_field_fails_session(self) -> None:
        """Test that an interaction error ends the session without an attempt."""
        checkout = FakeCheckout()
        checkout.input.detached = True

        applier, result = await _run(checkout, [_code("A"), _code("B")])

        assert result.tested == 0
        assert result.error_message.startswith("Failed to apply coupon A")
        assert applier.state == SessionState.FAILED

    @pytest.mark.asyncio
    async def test_evaluation_error_is_failed_attempt(self) -> None:
        checkout = FakeCheckout()

        with patch("opencoupon.orchestrator.scan_indicators", AsyncMock(side_effect=RuntimeError("boom"))):
            _, result = await _run(checkout, [_code("A")])

        attempt = result.all_results[0]
        assert attempt.outcome == Outcome.FAILURE
        assert attempt.failure_reason == "Unexpected error: boom"

    @pytest.mark.asyncio
    async def test_unexpected_error_is_reported(self) -> None:
        checkout = FakeCheckout()
        applier = checkout.applier()
        applier.price_observer.detect_price = AsyncMock(side_effect=RuntimeError("page crashed"))

        _, result = await _run(checkout, [_code("A")], applier=applier)

        assert result.error_message == "page crashed"
        assert applier.state == SessionState.FAILED
        assert not applier.is_running


class TestSessionReporting:
    """Tests for events and feedback after a session."""

    @pytest.mark.asyncio
    async def test_event_sequence(self) -> None:
        checkout = FakeCheckout(prices={"A": "$90.00"})
        applier = checkout.applier()
        events = _record_events(applier)

        _, result = await _run(checkout, [_code("A"), _code("B")], applier=applier)

        kinds = [type(e).__name__ for e in events]
        assert kinds == ["ProgressEvent", "AttemptEvent", "ProgressEvent", "AttemptEvent", "CompletedEvent"]
        assert events[-1].result is result

    @pytest.mark.asyncio
    async def test_feedback_submitted_with_domain(self) -> None:
        checkout = FakeCheckout(prices={"A": "$90.00"})
        feedback = AsyncMock()
        applier = checkout.applier(feedback=feedback)

        _, result = await _run(checkout, [_code("A")], applier=applier)

        feedback.submit.assert_awaited_once_with(result.all_results, "shop.example.com")

    @pytest.mark.asyncio
    async def test_feedback_failure_does_not_fail_session(self) -> None:
        checkout = FakeCheckout(prices={"A": "$90.00"})
        feedback = AsyncMock()
        feedback.submit.side_effect = RuntimeError("backend down")
        applier = checkout.applier(feedback=feedback)

        _, result = await _run(checkout, [_code("A")], applier=applier)

        assert result.successful == 1
        assert result.error_message is None
        assert applier.state == SessionState.COMPLETED

    @pytest.mark.asyncio
    async def test_no_feedback_without_attempts(self) -> None:
        checkout = FakeCheckout()
        checkout.page.selectors.clear()
        feedback = AsyncMock()
        applier = checkout.applier(feedback=feedback)

        await _run(checkout, [_code("A")], applier=applier)

        feedback.submit.assert_not_awaited()
