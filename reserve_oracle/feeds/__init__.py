"""
Price inputs for the reserve oracle

Provides:
- HTTP feed base (rate limiting, TTL cache, retries)
- Exchange ticker venues (Coinbase, Kraken)
- Upstream round feeds (manual publish, or venue polling with trimmed median)
- Source adapters consumed by PriceFeedAggregator

Usage:
    from reserve_oracle.feeds import RoundFeed, DirectFeedSource

    feed = RoundFeed("PAXG/USD", decimals=8)
    direct = DirectFeedSource({"PAXG/USD": feed})
    feed.publish(234567000000)
    direct.fetch_price("PAXG/USD", now)
"""

from .base import DataFeed, FeedError, PayloadError, RateLimiter, RateLimitError
from .venues import (
    VenueQuote,
    ExchangeTickerFeed,
    CoinbaseTickerFeed,
    KrakenTickerFeed,
    create_venue,
)
from .rounds import Round, RoundFeed, VenueRoundFeed, compute_trimmed_median
from .sources import (
    PriceSourceAdapter,
    DirectFeedSource,
    ManualQuote,
    ManualSubmissionSource,
    TimeWeightedAverageSource,
)

__all__ = [
    # Base
    "DataFeed",
    "FeedError",
    "PayloadError",
    "RateLimiter",
    "RateLimitError",
    # Venues
    "VenueQuote",
    "ExchangeTickerFeed",
    "CoinbaseTickerFeed",
    "KrakenTickerFeed",
    "create_venue",
    # Rounds
    "Round",
    "RoundFeed",
    "VenueRoundFeed",
    "compute_trimmed_median",
    # Adapters
    "PriceSourceAdapter",
    "DirectFeedSource",
    "ManualQuote",
    "ManualSubmissionSource",
    "TimeWeightedAverageSource",
]
