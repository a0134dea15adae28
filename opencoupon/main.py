import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

import httpx
import structlog
from playwright.async_api import async_playwright

from opencoupon import config
from opencoupon.api import extract_hostname, fetch_coupons
from opencoupon.events import AttemptEvent, ProgressEvent
from opencoupon.feedback import HttpFeedbackSink
from opencoupon.models import ApplierOptions, CandidateCode, SelectorConfig
from opencoupon.orchestrator import AutoApplier

EXIT_FOUND = 0
EXIT_ERROR = 1
EXIT_NONE_FOUND = 2


def configure_logging() -> None:
    level = logging.DEBUG if config.DEBUG else logging.INFO
    structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(level))


def load_codes(path: str) -> list[CandidateCode]:
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    items = raw.get("data", []) if isinstance(raw, dict) else raw
    out = []
    for i, item in enumerate(items):
        if isinstance(item, str):
            item = {"id": f"local-{i + 1}", "code": item}
        out.append(CandidateCode.model_validate(item))
    return out


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="opencoupon", description="Try discount codes on a checkout page.")
    p.add_argument("url", help="checkout or cart page URL")
    p.add_argument("--codes", help="JSON file: list of codes or coupon objects (default: fetch from API)")
    p.add_argument("--input", dest="input_selector", help="CSS selector of the code input")
    p.add_argument("--submit", dest="submit_selector", help="CSS selector of the apply button")
    p.add_argument("--max-attempts", type=int, default=config.MAX_ATTEMPTS)
    p.add_argument("--timeout", type=int, default=config.ATTEMPT_TIMEOUT_MS, help="per-code wait in ms")
    p.add_argument("--no-feedback", action="store_true", help="do not report results to the API")
    return p


def _print_event(event) -> None:
    if isinstance(event, ProgressEvent):
        print(f"[{event.current}/{event.total}] trying {event.code}")
    elif isinstance(event, AttemptEvent):
        r = event.result
        if r.success:
            print(f"  ✅ {r.code}: saved {r.price_before.currency_symbol}{r.discount_amount:.2f} ({r.discount_percentage:.1f}%)")
        else:
            print(f"  ❌ {r.code}: {r.outcome.value} ({r.failure_reason})")


async def run_once(args) -> int:
    print(f"[once] flags DEBUG={config.DEBUG} HEADFUL={config.HEADFUL}")
    domain = extract_hostname(args.url) or ""

    selector_config = SelectorConfig(input=args.input_selector, submit=args.submit_selector)
    if args.codes:
        candidates = load_codes(args.codes)
    else:
        try:
            batch = await fetch_coupons(domain)
        except httpx.HTTPError as e:
            print(f"error: could not fetch coupons for {domain}: {e}")
            return EXIT_ERROR
        candidates = batch.candidates
        if selector_config.is_empty:
            selector_config = batch.selector_config

    if not candidates:
        print(f"no coupons available for {domain}")
        return EXIT_NONE_FOUND

    options = ApplierOptions(
        selector_config=selector_config,
        max_attempts=args.max_attempts,
        timeout=args.timeout,
    )
    feedback = None if args.no_feedback else HttpFeedbackSink()

    async with async_playwright() as p:
        browser = await p.chromium.launch(headless=not config.HEADFUL)
        ctx = await browser.new_context(user_agent=config.USER_AGENT, locale="en-US")
        page = await ctx.new_page()
        try:
            print("[once] goto", args.url)
            await page.goto(args.url, wait_until="domcontentloaded")
            applier = AutoApplier(page, feedback=feedback)
            applier.events.subscribe(_print_event)
            result = await applier.run(candidates, options)
        finally:
            await ctx.close()
            await browser.close()

    print(f"tested={result.tested} successful={result.successful} failed={result.failed}")
    if result.error_message:
        print("error:", result.error_message)
    if result.best_attempt:
        best = result.best_attempt
        print(f"best: {best.code} saves {best.price_before.currency_symbol}{best.discount_amount:.2f}")
        return EXIT_FOUND
    if result.error_message and not result.tested:
        return EXIT_ERROR
    return EXIT_NONE_FOUND


def main(argv=None) -> int:
    configure_logging()
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(run_once(args))
    except KeyboardInterrupt:
        print("\n⏹️  stopped by user")
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
