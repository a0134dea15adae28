# In-page scripts and element-state helpers shared by the locator and the price observer.
import structlog
from playwright.async_api import Error as PlaywrightError

from opencoupon.models import ElementInfo

logger = structlog.get_logger(__name__)

TEXT_INPUT_SELECTOR = 'input[type="text"], input[type="search"], input:not([type])'
SUBMIT_TYPED_SELECTOR = 'button[type="submit"], input[type="submit"]'
BUTTON_SELECTOR = "button"
NEARBY_SUBMIT_SELECTOR = 'button, input[type="submit"]'
LABEL_SELECTOR = "label"

# One snapshot per element. layoutHidden is only reported when the document
# has a laid-out viewport; otherwise visibility falls back to computed style.
# Read-only: the script never writes to the DOM. The viewport check runs once per page.
ELEMENT_INFO_JS = """
  (el) => {
    const style = window.getComputedStyle(el);
    let layoutHidden = false;
    try {
      if (style.position !== 'fixed' && el.offsetParent === null && el.tagName !== 'BODY' && el.parentElement) {
        if (window.__opencouponLayoutWorks === undefined) {
          window.__opencouponLayoutWorks = document.documentElement.clientWidth > 0;
        }
        layoutHidden = window.__opencouponLayoutWorks;
      }
    } catch (e) {
      layoutHidden = false;
    }
    const data = Array.from(el.attributes)
      .filter(a => a.name.startsWith('data-'))
      .map(a => a.value);
    return {
      tag: (el.tagName || '').toLowerCase(),
      type: (el.getAttribute('type') || '').toLowerCase(),
      id: el.id || '',
      name: el.getAttribute('name') || '',
      placeholder: el.getAttribute('placeholder') || '',
      ariaLabel: el.getAttribute('aria-label') || '',
      className: typeof el.className === 'string' ? el.className : (el.getAttribute('class') || ''),
      data,
      text: (el.textContent || '').trim(),
      htmlFor: el.getAttribute('for') || '',
      display: style.display,
      visibility: style.visibility,
      opacity: style.opacity,
      disabled: !!el.disabled,
      tabindex: el.getAttribute('tabindex'),
      connected: el.isConnected,
      layoutHidden,
    };
  }
"""

CLOSEST_FORM_JS = "(el) => el.closest('form')"
PARENT_JS = "(el) => el.parentElement"
NEXT_SIBLING_JS = "(el) => el.nextElementSibling"

BODY_TEXT_JS = "() => (document.body && (document.body.innerText || document.body.textContent)) || ''"

INDICATORS_JS = """
  () => {
    const body = document.body;
    const text = body ? (body.innerText || body.textContent || '') : '';
    const successElements = document.querySelectorAll(
      '[class*="success"], [class*="check"], [aria-label*="success"]'
    ).length;
    const errorElements = document.querySelectorAll(
      '[class*="error"], [class*="invalid"], [aria-label*="error"]'
    ).length;
    return { text, successElements, errorElements };
  }
"""


def is_visible(info: ElementInfo) -> bool:
    if not info.connected:
        return False
    if info.display == "none" or info.visibility == "hidden":
        return False
    if info.opacity.strip() in ("0", "0.0"):
        return False
    return not info.layout_hidden


def is_usable(info: ElementInfo) -> bool:
    """Visible, enabled and reachable from the keyboard."""
    return is_visible(info) and not info.disabled and info.tabindex != "-1"


def is_text_input(info: ElementInfo) -> bool:
    return info.tag == "input" and info.type in ("", "text", "search")


async def describe(handle) -> ElementInfo | None:
    """Read an element's state; None when the handle is gone."""
    if handle is None:
        return None
    try:
        raw = await handle.evaluate(ELEMENT_INFO_JS)
    except PlaywrightError as e:
        logger.debug("Element snapshot failed", error=str(e))
        return None
    if not raw:
        return None
    return ElementInfo.model_validate(raw)


async def related(handle, script: str):
    """Follow a DOM relation (form, parent, sibling) to another element handle."""
    try:
        js_handle = await handle.evaluate_handle(script)
    except PlaywrightError as e:
        logger.debug("DOM relation lookup failed", error=str(e))
        return None
    return js_handle.as_element() if js_handle is not None else None
