import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

def _env_bool(name: str, default: bool=False) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in ("1","true","t","yes","y","on")

def _env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or not v.strip():
        return default
    try:
        return int(v.strip())
    except ValueError:
        return default

DEBUG    = _env_bool("DEBUG", False)
HEADFUL  = _env_bool("HEADFUL", False)

# Plain desktop UA for the CLI browser context
USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 13_5) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

API_BASE_URL     = os.getenv("API_BASE_URL", "https://api.opencoupon.com/api/v1").rstrip("/")
FEEDBACK_ENABLED = _env_bool("FEEDBACK_ENABLED", True)

# Session defaults
MAX_ATTEMPTS       = _env_int("MAX_ATTEMPTS", 20)
ATTEMPT_TIMEOUT_MS = _env_int("ATTEMPT_TIMEOUT_MS", 5000)
DELAY_MIN_MS       = _env_int("DELAY_MIN_MS", 2000)
DELAY_MAX_MS       = _env_int("DELAY_MAX_MS", 4000)

CURRENCY_SYMBOLS = "$€£¥₹₽"

def is_price_usable(x) -> bool:
    try:
        return x is not None and float(x) > 0
    except (TypeError, ValueError):
        return False
