"""Typed session events and the channel that fans them out."""

import inspect
from typing import Callable, List, Union

import structlog
from pydantic import BaseModel

from opencoupon.models import AttemptResult, SessionResult

logger = structlog.get_logger(__name__)


class ProgressEvent(BaseModel):
    current: int
    total: int
    code: str


class AttemptEvent(BaseModel):
    result: AttemptResult


class CompletedEvent(BaseModel):
    result: SessionResult


SessionEvent = Union[ProgressEvent, AttemptEvent, CompletedEvent]
Listener = Callable[[SessionEvent], object]


class EventChannel:
    """Delivers events to subscribers in order. Sync or async listeners."""

    def __init__(self):
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def emit(self, event: SessionEvent) -> None:
        for listener in list(self._listeners):
            try:
                outcome = listener(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                # A broken UI listener must not abort a session
                logger.exception("Event listener failed", event=type(event).__name__)
