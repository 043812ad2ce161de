"""
Exchange ticker feeds used as upstream price venues.

Public ticker endpoints only (no auth). Each venue maps our symbols to its
own pair naming and normalizes the ticker into a VenueQuote.
"""

import time
from abc import abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Type

import aiohttp

from .base import DataFeed, FeedError, PayloadError


@dataclass
class VenueQuote:
    """Normalized top-of-book quote from one venue"""
    venue: str
    symbol: str
    price: float
    bid: float
    ask: float
    timestamp: float

    @property
    def mid_price(self) -> float:
        if self.bid > 0 and self.ask > 0:
            return (self.bid + self.ask) / 2
        return self.price

    @property
    def spread_bps(self) -> float:
        if self.bid <= 0:
            return 0
        return (self.ask - self.bid) / self.bid * 10000


class ExchangeTickerFeed(DataFeed):
    """Shared behaviour for exchange ticker venues"""

    BASE_URL = ""
    SYMBOL_MAP: Dict[str, str] = {}

    def __init__(
        self,
        name: str,
        rate_limit: float,
        cache_ttl: float = 1.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        super().__init__(name=name, rate_limit=rate_limit, cache_ttl=cache_ttl, session=session)

    def venue_symbol(self, symbol: str) -> str:
        return self.SYMBOL_MAP.get(symbol, self._default_symbol(symbol))

    @abstractmethod
    def _default_symbol(self, symbol: str) -> str:
        pass

    async def get_quote(self, symbol: str) -> VenueQuote:
        return await self.fetch_with_retry(symbol)

    async def get_price(self, symbol: str) -> float:
        quote = await self.get_quote(symbol)
        return quote.mid_price

    async def get_quotes(self, symbols: List[str]) -> Dict[str, VenueQuote]:
        """Quotes for several symbols; failed symbols are omitted"""
        quotes = {}
        for symbol in symbols:
            try:
                quotes[symbol] = await self.get_quote(symbol)
            except FeedError:
                continue
        return quotes


class CoinbaseTickerFeed(ExchangeTickerFeed):
    """
    Coinbase Exchange ticker.

    Rate limits: 10 requests/second for public endpoints
    """

    BASE_URL = "https://api.exchange.coinbase.com"

    SYMBOL_MAP = {
        "BTC/USD": "BTC-USD",
        "ETH/USD": "ETH-USD",
        "PAXG/USD": "PAXG-USD",
        "USDT/USD": "USDT-USD",
        "USDC/USD": "USDC-USD",
    }

    def __init__(self, cache_ttl: float = 1.0, session: Optional[aiohttp.ClientSession] = None):
        super().__init__(name="coinbase", rate_limit=8.0, cache_ttl=cache_ttl, session=session)

    def _default_symbol(self, symbol: str) -> str:
        return symbol.replace("/", "-")

    async def _fetch(self, symbol: str) -> VenueQuote:
        product = self.venue_symbol(symbol)
        data = await self._get_json(f"{self.BASE_URL}/products/{product}/ticker")

        try:
            return VenueQuote(
                venue=self.name,
                symbol=symbol,
                price=float(data["price"]),
                bid=float(data["bid"]),
                ask=float(data["ask"]),
                timestamp=time.time(),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise PayloadError(f"Coinbase ticker for {product} malformed: {e}")


class KrakenTickerFeed(ExchangeTickerFeed):
    """
    Kraken public ticker.

    Rate limits: 1 request/second for public endpoints (conservative)
    """

    BASE_URL = "https://api.kraken.com"

    # Kraken uses XBT for Bitcoin and legacy X/Z prefixed pair names
    SYMBOL_MAP = {
        "BTC/USD": "XXBTZUSD",
        "ETH/USD": "XETHZUSD",
        "PAXG/USD": "PAXGUSD",
        "USDT/USD": "USDTZUSD",
        "USDC/USD": "USDCUSD",
    }

    def __init__(self, cache_ttl: float = 1.0, session: Optional[aiohttp.ClientSession] = None):
        super().__init__(name="kraken", rate_limit=1.0, cache_ttl=cache_ttl, session=session)

    def _default_symbol(self, symbol: str) -> str:
        return symbol.replace("/", "").replace("BTC", "XBT")

    async def _fetch(self, symbol: str) -> VenueQuote:
        pair = self.venue_symbol(symbol)
        data = await self._get_json(f"{self.BASE_URL}/0/public/Ticker", params={"pair": pair})

        if data.get("error"):
            raise FeedError(f"Kraken API error: {data['error']}")

        result = data.get("result") or {}
        if not result:
            raise FeedError(f"No data returned for {symbol}")

        # Result is keyed by Kraken's canonical pair name, which may differ
        # from the one requested.
        # a = ask [price, ...], b = bid [price, ...], c = last trade [price, volume]
        ticker = next(iter(result.values()))
        try:
            return VenueQuote(
                venue=self.name,
                symbol=symbol,
                price=float(ticker["c"][0]),
                bid=float(ticker["b"][0]),
                ask=float(ticker["a"][0]),
                timestamp=time.time(),
            )
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise PayloadError(f"Kraken ticker for {pair} malformed: {e}")


VENUE_CLASSES: Dict[str, Type[ExchangeTickerFeed]] = {
    "coinbase": CoinbaseTickerFeed,
    "kraken": KrakenTickerFeed,
}


def create_venue(name: str, **kwargs) -> ExchangeTickerFeed:
    """Instantiate a venue feed by name"""
    if name not in VENUE_CLASSES:
        raise ValueError(f"Unknown venue: {name}")
    return VENUE_CLASSES[name](**kwargs)
