"""
Upstream price rounds.

A RoundFeed holds the latest answer published for one source descriptor,
in the upstream's native decimal precision. DirectFeed adapters read these
rounds synchronously; VenueRoundFeed refreshes its round asynchronously by
polling exchange venues and publishing their trimmed weighted median.
"""

import asyncio
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import numpy as np
import logging

from .venues import ExchangeTickerFeed, VenueQuote
from ..units import to_fixed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Round:
    """
    One published answer.

    Attributes:
        round_id: Monotonic round counter
        answer: Price in `decimals` fixed point
        decimals: Native decimal precision of the answer
        started_at: Unix time the round opened
        updated_at: Unix time the answer was written
        answered_in_round: Round in which the answer was computed
    """
    round_id: int
    answer: int
    decimals: int
    started_at: int
    updated_at: int
    answered_in_round: int


class RoundFeed:
    """
    Latest-round cell for one upstream source.

    Usage:
        feed = RoundFeed("PAXG/USD", decimals=8)
        feed.publish(234567000000)  # 2345.67 at 8 decimals
        feed.latest_round()
    """

    def __init__(
        self,
        description: str,
        decimals: int = 8,
        clock: Callable[[], float] = time.time,
    ):
        if decimals < 0:
            raise ValueError("decimals must be non-negative")
        self.description = description
        self.decimals = decimals
        self._clock = clock
        self._round: Optional[Round] = None
        self._lock = threading.Lock()

    def publish(self, answer: int, updated_at: Optional[int] = None) -> Round:
        """Publish a new answer (native decimals) as the next round"""
        now = int(updated_at if updated_at is not None else self._clock())
        with self._lock:
            round_id = self._round.round_id + 1 if self._round else 1
            self._round = Round(
                round_id=round_id,
                answer=int(answer),
                decimals=self.decimals,
                started_at=now,
                updated_at=now,
                answered_in_round=round_id,
            )
            return self._round

    def latest_round(self) -> Optional[Round]:
        return self._round


class VenueRoundFeed(RoundFeed):
    """
    Round feed backed by several exchange venues.

    Each poll fetches quotes from every venue in parallel and publishes the
    weighted trimmed median as a new round. Polls that reach too few venues,
    or whose cross-venue spread is too wide, publish nothing; the previous
    round then ages out through the adapter's freshness check.
    """

    def __init__(
        self,
        symbol: str,
        venues: List[ExchangeTickerFeed],
        weights: Optional[Dict[str, float]] = None,
        decimals: int = 8,
        trim_pct: float = 0.1,
        min_venues: int = 1,
        max_spread_bps: float = 500.0,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(description=symbol, decimals=decimals, clock=clock)
        self.symbol = symbol
        self.venues = venues
        self.weights = weights or {}
        self.trim_pct = trim_pct
        self.min_venues = min_venues
        self.max_spread_bps = max_spread_bps
        self.last_quotes: Dict[str, VenueQuote] = {}

    async def close(self):
        for venue in self.venues:
            await venue.close()

    async def poll(self) -> Optional[Round]:
        """Fetch all venues and publish a round if the quotes agree"""
        tasks = {
            venue.name: asyncio.create_task(venue.get_quote(self.symbol))
            for venue in self.venues
        }

        quotes: Dict[str, VenueQuote] = {}
        for name, task in tasks.items():
            try:
                quotes[name] = await task
            except Exception as e:
                logger.warning(f"{self.symbol}: venue {name} failed: {e}")

        self.last_quotes = quotes

        if len(quotes) < self.min_venues:
            logger.warning(
                f"{self.symbol}: only {len(quotes)}/{self.min_venues} venues answered, "
                f"round not published"
            )
            return None

        prices = np.array([q.mid_price for q in quotes.values()])
        weights = np.array([self.weights.get(name, 1.0) for name in quotes])

        if np.any(prices <= 0):
            logger.warning(f"{self.symbol}: non-positive venue price, round not published")
            return None

        median = float(np.median(prices))
        spread_bps = float((prices.max() - prices.min()) / median * 10000)
        if spread_bps > self.max_spread_bps:
            logger.warning(
                f"{self.symbol}: venue spread {spread_bps:.0f}bps exceeds "
                f"{self.max_spread_bps:.0f}bps, round not published"
            )
            return None

        price = compute_trimmed_median(prices, weights, self.trim_pct)
        published = self.publish(to_fixed(price, self.decimals))
        logger.debug(
            f"{self.symbol}: round {published.round_id} = {price:.8f} "
            f"from {len(quotes)} venues (spread {spread_bps:.1f}bps)"
        )
        return published


def compute_trimmed_median(prices: np.ndarray, weights: np.ndarray, trim_pct: float = 0.1) -> float:
    """
    Weighted median after trimming the extremes.

    With fewer than three observations nothing is trimmed.
    """
    if len(prices) < 3:
        return float(np.median(prices))

    order = np.argsort(prices)
    sorted_prices = prices[order]
    sorted_weights = weights[order]

    n = len(prices)
    trim_n = max(1, int(n * trim_pct))
    if n - 2 * trim_n < 1:
        trim_n = (n - 1) // 2

    trimmed_prices = sorted_prices[trim_n:n - trim_n]
    trimmed_weights = sorted_weights[trim_n:n - trim_n]

    cumsum = np.cumsum(trimmed_weights)
    median_idx = int(np.searchsorted(cumsum, cumsum[-1] / 2))
    median_idx = min(median_idx, len(trimmed_prices) - 1)

    return float(trimmed_prices[median_idx])
