"""
Observable notifications.

Authoritative components emit these only after the state change of an
operation has been finalized. Handlers are invoked synchronously in
registration order; a failing handler is logged and does not affect others.
"""

from dataclasses import dataclass, asdict
from typing import Callable, Dict, List, Optional, Type
import logging

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Event:
    """Base notification"""

    @property
    def name(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict:
        return {"event": self.name, **asdict(self)}


# ============ Price feed notifications ============

@dataclass(frozen=True)
class FeedRegistered(Event):
    asset: str
    symbol: str
    source_kind: str
    heartbeat: int
    deviation_threshold_bps: int


@dataclass(frozen=True)
class FeedReconfigured(Event):
    asset: str
    source_kind: str
    heartbeat: int
    deviation_threshold_bps: int
    active: bool


@dataclass(frozen=True)
class PriceUpdated(Event):
    asset: str
    price: int
    source_kind: str
    timestamp: int


@dataclass(frozen=True)
class FallbackActivated(Event):
    asset: str
    reason: str


@dataclass(frozen=True)
class DeviationExceeded(Event):
    asset: str
    old: int
    new: int
    deviation_bps: int
    rejected: bool = False


# ============ Attestation notifications ============

@dataclass(frozen=True)
class ReportSubmitted(Event):
    report_id: int
    submitter: str
    document_ref: str
    content_hash: str


@dataclass(frozen=True)
class ReportAttested(Event):
    report_id: int
    attestor: str
    attestation_count: int


@dataclass(frozen=True)
class ReportVerified(Event):
    report_id: int
    attestation_count: int


# ============ Reserve notifications ============

@dataclass(frozen=True)
class ReserveUpdated(Event):
    reserve_root_hash: str
    total_reserves: int
    total_supply: int


Handler = Callable[[Event], None]


class EventBus:
    """
    Minimal synchronous publish/subscribe hub.

    Usage:
        bus = EventBus()
        bus.on(PriceUpdated, lambda e: print(e.price))
        bus.on(None, log_everything)  # all events
    """

    def __init__(self):
        self._handlers: Dict[Optional[Type[Event]], List[Handler]] = {}

    def on(self, event_type: Optional[Type[Event]], handler: Handler):
        """Register handler for an event type (None = every event)"""
        self._handlers.setdefault(event_type, []).append(handler)

    def off(self, event_type: Optional[Type[Event]], handler: Handler):
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def emit(self, event: Event):
        for handler in self._handlers.get(type(event), []) + self._handlers.get(None, []):
            try:
                handler(event)
            except Exception as e:
                logger.error(f"{event.name} handler error: {e}")

    def emit_all(self, events: List[Event]):
        for event in events:
            self.emit(event)


class EventRecorder:
    """Collects every emitted event; handy for audits and tests"""

    def __init__(self, bus: Optional[EventBus] = None):
        self.events: List[Event] = []
        if bus is not None:
            bus.on(None, self.events.append)

    def of_type(self, event_type: Type[Event]) -> List[Event]:
        return [e for e in self.events if isinstance(e, event_type)]

    def clear(self):
        self.events.clear()
