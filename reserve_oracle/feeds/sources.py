"""
Price source adapters.

Each adapter turns a source descriptor into one validated price at the
fixed 18-decimal scale, or raises SourceUnavailableError. The aggregator
treats that error as the signal to fall back to the secondary source.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional
import logging

from .rounds import RoundFeed
from ..errors import SourceUnavailableError, ValidationError
from ..models.feed import SourceKind
from ..units import rescale

logger = logging.getLogger(__name__)


class PriceSourceAdapter(ABC):
    """Fetches one normalized price from one kind of upstream source"""

    kind: SourceKind

    @abstractmethod
    def fetch_price(self, descriptor: str, now: int) -> int:
        """
        Return the current price for `descriptor` at 18 decimals.

        Raises:
            SourceUnavailableError: source unknown, unreachable, stale or
                returned data that fails validation
        """
        pass

    def has_source(self, descriptor: str) -> bool:
        return True

    def get_status(self) -> Dict:
        return {"kind": self.kind.value}


class DirectFeedSource(PriceSourceAdapter):
    """
    Reads the latest round of an upstream round feed.

    A round is accepted only if it is complete, was answered in its own
    round, is not from the future, is younger than `max_round_age` and has
    a positive answer. The answer is rescaled from the feed's native
    decimals to 18.
    """

    kind = SourceKind.DIRECT_FEED

    def __init__(
        self,
        feeds: Optional[Dict[str, RoundFeed]] = None,
        max_round_age: int = 3600,
        max_clock_skew: int = 60,
    ):
        self.max_round_age = max_round_age
        self.max_clock_skew = max_clock_skew
        self._feeds: Dict[str, RoundFeed] = dict(feeds or {})

    def register(self, descriptor: str, feed: RoundFeed):
        if not descriptor:
            raise ValidationError("source descriptor is required")
        self._feeds[descriptor] = feed

    def has_source(self, descriptor: str) -> bool:
        return descriptor in self._feeds

    def fetch_price(self, descriptor: str, now: int) -> int:
        feed = self._feeds.get(descriptor)
        if feed is None:
            raise SourceUnavailableError(f"unknown direct feed: {descriptor}")

        rnd = feed.latest_round()
        if rnd is None:
            raise SourceUnavailableError(f"{descriptor}: no round published")
        if rnd.updated_at == 0:
            raise SourceUnavailableError(f"{descriptor}: round {rnd.round_id} incomplete")
        if rnd.answered_in_round < rnd.round_id:
            raise SourceUnavailableError(f"{descriptor}: round {rnd.round_id} carried over")
        if rnd.updated_at > now + self.max_clock_skew:
            raise SourceUnavailableError(f"{descriptor}: round timestamp in the future")
        if now - rnd.updated_at > self.max_round_age:
            raise SourceUnavailableError(
                f"{descriptor}: round {rnd.round_id} is {now - rnd.updated_at}s old"
            )
        if rnd.answer <= 0:
            raise SourceUnavailableError(f"{descriptor}: non-positive answer {rnd.answer}")

        return rescale(rnd.answer, rnd.decimals)

    def get_status(self) -> Dict:
        rounds = {}
        for descriptor, feed in self._feeds.items():
            rnd = feed.latest_round()
            rounds[descriptor] = {
                "round_id": rnd.round_id if rnd else None,
                "updated_at": rnd.updated_at if rnd else None,
            }
        return {"kind": self.kind.value, "max_round_age": self.max_round_age, "feeds": rounds}


@dataclass(frozen=True)
class ManualQuote:
    """Operator-posted price, valid until submitted_at + expiry"""
    price: int
    submitted_at: int
    submitter: str = ""


class ManualSubmissionSource(PriceSourceAdapter):
    """
    Operator-posted prices with their own expiry window.

    The expiry is independent of the consuming feed's heartbeat: a posted
    value may be refused here even while the feed itself is still fresh.
    """

    kind = SourceKind.MANUAL_SUBMISSION

    def __init__(self, expiry: int = 3600):
        if expiry <= 0:
            raise ValidationError("manual submission expiry must be positive")
        self.expiry = expiry
        self._quotes: Dict[str, ManualQuote] = {}
        self._lock = threading.Lock()

    def post(self, descriptor: str, price: int, submitted_at: int, submitter: str = "") -> ManualQuote:
        if not descriptor:
            raise ValidationError("source descriptor is required")
        if price <= 0:
            raise ValidationError("manual price must be positive")
        quote = ManualQuote(price=int(price), submitted_at=int(submitted_at), submitter=submitter)
        with self._lock:
            self._quotes[descriptor] = quote
        logger.info(f"Manual quote posted for {descriptor} by {submitter or 'unknown'}")
        return quote

    def has_source(self, descriptor: str) -> bool:
        return descriptor in self._quotes

    def fetch_price(self, descriptor: str, now: int) -> int:
        quote = self._quotes.get(descriptor)
        if quote is None:
            raise SourceUnavailableError(f"no manual quote for {descriptor}")
        if now > quote.submitted_at + self.expiry:
            raise SourceUnavailableError(
                f"manual quote for {descriptor} expired {now - quote.submitted_at - self.expiry}s ago"
            )
        return quote.price

    def get_status(self) -> Dict:
        return {
            "kind": self.kind.value,
            "expiry": self.expiry,
            "quotes": {d: q.submitted_at for d, q in self._quotes.items()},
        }


class TimeWeightedAverageSource(PriceSourceAdapter):
    """Extension point; every read fails so the aggregator falls back"""

    kind = SourceKind.TIME_WEIGHTED_AVERAGE

    def fetch_price(self, descriptor: str, now: int) -> int:
        raise SourceUnavailableError("time-weighted average source not implemented")
