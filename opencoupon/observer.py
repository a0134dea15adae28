"""DOM change notification behind a small interface.

The price observer only needs three things from the page: start watching a
container, wait for the next mutation, stop watching. ``DomChangeObserver``
does that with a ``MutationObserver`` that calls back into Python through a
Playwright binding; tests substitute a deterministic fake.
"""

import asyncio
from typing import Any, Optional, Protocol

import structlog

logger = structlog.get_logger(__name__)

BINDING_NAME = "__opencouponMutation"

# Arg: [bindingName, elementOrNull]. Watches the closest checkout-ish ancestor.
INSTALL_OBSERVER_JS = """
  ([binding, el]) => {
    const sel = 'main, [role="main"], .checkout, .cart';
    const container = (el && el.isConnected && el.closest(sel))
      || document.querySelector(sel)
      || document.body;
    if (window.__opencouponObserver) window.__opencouponObserver.disconnect();
    const mo = new MutationObserver(() => { window[binding](); });
    mo.observe(container, { childList: true, subtree: true, characterData: true, attributes: true });
    window.__opencouponObserver = mo;
    return container.tagName.toLowerCase();
  }
"""

DISCONNECT_OBSERVER_JS = """
  () => {
    if (window.__opencouponObserver) {
      window.__opencouponObserver.disconnect();
      window.__opencouponObserver = null;
    }
  }
"""


class ChangeObserver(Protocol):
    async def start(self, container_hint: Optional[Any] = None) -> None: ...

    async def wait_for_mutation(self) -> None: ...

    async def stop(self) -> None: ...


class DomChangeObserver:
    """MutationObserver in the page, signalled through ``page.expose_binding``."""

    def __init__(self, page):
        self.page = page
        self._signal = asyncio.Event()

    async def _ensure_binding(self) -> None:
        # A binding name can only be exposed once per page; later observers
        # re-point the page's dispatcher at themselves.
        self.page._opencoupon_observer = self
        if getattr(self.page, "_opencoupon_binding", False):
            return

        page = self.page

        def _on_mutation(source, *args):
            current = getattr(page, "_opencoupon_observer", None)
            if current is not None:
                current._signal.set()

        await page.expose_binding(BINDING_NAME, _on_mutation)
        page._opencoupon_binding = True

    async def start(self, container_hint: Optional[Any] = None) -> None:
        await self._ensure_binding()
        self._signal.clear()
        container = await self.page.evaluate(INSTALL_OBSERVER_JS, [BINDING_NAME, container_hint])
        logger.debug("Mutation observer installed", container=container)

    async def wait_for_mutation(self) -> None:
        await self._signal.wait()
        self._signal.clear()

    async def stop(self) -> None:
        if getattr(self.page, "_opencoupon_observer", None) is self:
            self.page._opencoupon_observer = None
        try:
            await self.page.evaluate(DISCONNECT_OBSERVER_JS)
        except Exception as e:
            # Page may have navigated or closed; nothing left to disconnect.
            logger.debug("Mutation observer disconnect failed", error=str(e))
