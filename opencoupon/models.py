"""Data models for the auto-apply engine."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from opencoupon import config


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Outcome(str, Enum):
    """Classified result of one candidate attempt."""

    SUCCESS = "success"
    MISLEADING_SUCCESS = "misleading-success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


class DetectionMethod(str, Enum):
    """Which signal decided an attempt's outcome."""

    PRICE_CHANGE = "price-change"
    SUCCESS_MESSAGE = "success-message"
    FAILURE_MESSAGE = "failure-message"
    TIMEOUT = "timeout"


class LocatorMethod(str, Enum):
    """How the code-entry field was found."""

    RETAILER_SPECIFIC = "retailer-specific"
    ATTRIBUTE = "attribute"
    LABEL = "label"
    HEURISTIC = "heuristic"


class SessionState(str, Enum):
    IDLE = "idle"
    LOCATING = "locating"
    BASELINE_PRICING = "baseline-pricing"
    TESTING = "testing"
    REAPPLYING = "reapplying"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.CANCELLED, SessionState.FAILED)


class CandidateCode(BaseModel):
    """A discount code to try, with its track record."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(..., description="Backend identifier of the code")
    code: str = Field(..., min_length=1, description="The code as typed into the field")
    prior_success_count: int = Field(0, ge=0, alias="successCount")
    prior_failure_count: int = Field(0, ge=0, alias="failureCount")


class PriceSnapshot(BaseModel):
    """One observation of the checkout total."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    value: float = Field(..., ge=0, description="Normalized numeric total")
    raw_text: str = Field("", description="Text the value was parsed from")
    currency_symbol: str = Field("$", description="Detected currency glyph")
    source_ref: Optional[Any] = Field(None, exclude=True, description="Element handle the value was read from")
    observed_at: datetime = Field(default_factory=_now)

    def __str__(self) -> str:
        return f"{self.currency_symbol}{self.value:.2f}"


class AttemptResult(BaseModel):
    """Result of testing one candidate. Never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    candidate_id: str
    code: str
    price_before: PriceSnapshot
    price_after: PriceSnapshot
    discount_amount: float = Field(0.0, ge=0)
    discount_percentage: float = Field(0.0, ge=0)
    outcome: Outcome
    detection_method: DetectionMethod
    failure_reason: Optional[str] = None
    duration_ms: int = Field(0, ge=0)

    @property
    def success(self) -> bool:
        return self.outcome == Outcome.SUCCESS


class SessionResult(BaseModel):
    """Aggregate of one auto-apply session, updated in place while it runs."""

    tested: int = 0
    successful: int = 0
    failed: int = 0
    best_attempt: Optional[AttemptResult] = None
    all_results: List[AttemptResult] = Field(default_factory=list)
    cancelled_by_user: bool = False
    error_message: Optional[str] = None

    def record(self, attempt: AttemptResult) -> bool:
        """Append an attempt and update counters. Returns True on a new best."""
        self.all_results.append(attempt)
        self.tested += 1
        if attempt.success:
            self.successful += 1
        else:
            self.failed += 1

        if attempt.success and attempt.discount_amount > 0:
            if self.best_attempt is None or attempt.discount_amount > self.best_attempt.discount_amount:
                self.best_attempt = attempt
                return True
        return False


class SelectorConfig(BaseModel):
    """Site-specific CSS selector hints."""

    input: Optional[str] = None
    submit: Optional[str] = None
    container: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not (self.input or self.submit or self.container)


class FieldLocation(BaseModel):
    """Where the code-entry control and its submit control live."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    input_ref: Optional[Any] = None
    submit_ref: Optional[Any] = None
    container_ref: Optional[Any] = None
    confidence: int = Field(0, ge=0, le=100)
    detection_method: LocatorMethod = LocatorMethod.HEURISTIC

    @property
    def found(self) -> bool:
        return self.input_ref is not None and self.confidence > 0


class PageIndicators(BaseModel):
    """Textual/visual verdict the page itself displays after a submit."""

    success: bool = False
    message: Optional[str] = None


class ElementInfo(BaseModel):
    """Snapshot of an element's attributes and computed style."""

    model_config = ConfigDict(populate_by_name=True)

    tag: str = ""
    type: str = ""
    id: str = ""
    name: str = ""
    placeholder: str = ""
    aria_label: str = Field("", alias="ariaLabel")
    class_name: str = Field("", alias="className")
    data: List[str] = Field(default_factory=list)
    text: str = ""
    html_for: str = Field("", alias="htmlFor")
    display: str = "block"
    visibility: str = "visible"
    opacity: str = "1"
    disabled: bool = False
    tabindex: Optional[str] = None
    connected: bool = True
    layout_hidden: bool = Field(False, alias="layoutHidden")

    @field_validator("opacity", mode="before")
    @classmethod
    def _opacity_text(cls, v):
        return "" if v is None else str(v)


class ApplierOptions(BaseModel):
    """Configuration for one auto-apply session."""

    selector_config: SelectorConfig = Field(default_factory=SelectorConfig)
    keywords: Optional[List[str]] = None
    price_selectors: List[str] = Field(default_factory=list)
    delay_between_attempts: Tuple[int, int] = (config.DELAY_MIN_MS, config.DELAY_MAX_MS)
    max_attempts: int = Field(config.MAX_ATTEMPTS, ge=1)
    timeout: int = Field(config.ATTEMPT_TIMEOUT_MS, ge=0, description="Per-candidate price wait in ms")
    retry_attempts: int = Field(3, ge=0)
    retry_delay: int = Field(1000, ge=0)
    max_consecutive_failures: int = Field(5, ge=1)
    min_confidence: int = Field(30, ge=0, le=100)

    @field_validator("delay_between_attempts")
    @classmethod
    def _ordered_delay(cls, v: Tuple[int, int]) -> Tuple[int, int]:
        low, high = v
        if low < 0 or high < low:
            raise ValueError("delay_between_attempts must be (min_ms, max_ms) with 0 <= min <= max")
        return v
