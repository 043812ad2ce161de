"""
Authoritative reserve state sources.

ReserveLedger values in-process holdings with PriceFeedAggregator prices and
commits to them with a Merkle root. HttpReserveSource reads the same shape
from a JSON endpoint. Both notify listeners whenever the authoritative state
changes; the reconciliation engine subscribes through those listeners.
"""

import asyncio
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional
import logging

import aiohttp

from ..aggregator import PriceFeedAggregator
from ..crypto.merkle import MerkleCommitment
from ..errors import NotFoundError, ReserveOracleError, ValidationError
from ..events import EventBus, ReserveUpdated
from ..feeds.base import DataFeed, FeedError, PayloadError
from ..models.reserve import AssetRecord, ReserveState
from ..units import PRECISION, ratio

logger = logging.getLogger(__name__)

Listener = Callable[[], None]


class ReserveSource(ABC):
    """Provider of authoritative reserve state with change notifications"""

    def __init__(self):
        self._listeners: List[Listener] = []

    def add_listener(self, listener: Listener):
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self):
        for listener in list(self._listeners):
            try:
                listener()
            except Exception as e:
                logger.error(f"Reserve listener error: {e}")

    @abstractmethod
    async def fetch_reserve_state(self) -> ReserveState:
        pass

    async def close(self):
        pass


@dataclass
class Holding:
    """One custodied reserve position, priced through `price_asset`"""
    id: str
    name: str
    symbol: str
    amount: int
    price_asset: str
    last_updated: int


class ReserveLedger(ReserveSource):
    """
    In-process authoritative reserve valuation.

    Each holding is valued as amount * price / 1e18 using the aggregator's
    latest price for its `price_asset`. Valuation runs on read, so a stale
    feed makes `state()` fail with StaleDataError instead of serving an
    outdated total.

    Usage:
        ledger = ReserveLedger(aggregator, events=bus)
        ledger.set_holding("gold-vault-1", "Gold", "PAXG", 100 * PRECISION, "paxg")
        ledger.set_total_supply(200_000 * PRECISION)
        ledger.state().reserve_root_hash
    """

    def __init__(
        self,
        aggregator: PriceFeedAggregator,
        total_supply: int = 0,
        events: Optional[EventBus] = None,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__()
        self.aggregator = aggregator
        self.events = events or aggregator.events
        self._clock = clock
        self._total_supply = int(total_supply)
        self._holdings: Dict[str, Holding] = {}
        self._lock = threading.RLock()
        aggregator.add_price_consumer(self._on_price)

    @property
    def total_supply(self) -> int:
        return self._total_supply

    def holdings(self) -> List[Holding]:
        return list(self._holdings.values())

    def set_holding(
        self,
        asset_id: str,
        name: str,
        symbol: str,
        amount: int,
        price_asset: str,
    ) -> Holding:
        """Create or replace a holding"""
        if not asset_id:
            raise ValidationError("asset id is required")
        if amount < 0:
            raise ValidationError("holding amount must be non-negative")
        if price_asset not in self.aggregator.supported_assets():
            raise NotFoundError(f"no price feed for {price_asset}")

        with self._lock:
            holding = Holding(
                id=asset_id,
                name=name,
                symbol=symbol,
                amount=int(amount),
                price_asset=price_asset,
                last_updated=int(self._clock()),
            )
            self._holdings[asset_id] = holding

        self._changed()
        return holding

    def remove_holding(self, asset_id: str):
        with self._lock:
            if asset_id not in self._holdings:
                raise NotFoundError(f"Asset not found: {asset_id}")
            del self._holdings[asset_id]
        self._changed()

    def set_total_supply(self, total_supply: int):
        if total_supply < 0:
            raise ValidationError("total supply must be non-negative")
        with self._lock:
            self._total_supply = int(total_supply)
        self._changed()

    def state(self) -> ReserveState:
        """Value every holding and commit to the resulting records"""
        with self._lock:
            holdings = list(self._holdings.values())
            total_supply = self._total_supply

        records = []
        for h in holdings:
            price = self.aggregator.get_latest_price(h.price_asset)
            records.append(AssetRecord(
                id=h.id,
                name=h.name,
                symbol=h.symbol,
                amount=h.amount,
                value=h.amount * price // PRECISION,
                last_updated=h.last_updated,
            ))

        commitment = MerkleCommitment(records)
        total_reserves = sum(r.value for r in records)
        return ReserveState(
            total_supply=total_supply,
            total_reserves=total_reserves,
            collateralization_ratio=ratio(total_reserves, total_supply),
            assets=commitment.assets,
            reserve_root_hash=commitment.root,
            observed_at=int(self._clock()),
        )

    async def fetch_reserve_state(self) -> ReserveState:
        return self.state()

    def _on_price(self, asset: str, price: int):
        if any(h.price_asset == asset for h in self._holdings.values()):
            self._changed()

    def _changed(self):
        try:
            state = self.state()
        except ReserveOracleError as e:
            logger.warning(f"Reserve state not publishable: {e}")
        else:
            self.events.emit(ReserveUpdated(
                reserve_root_hash=state.reserve_root_hash,
                total_reserves=state.total_reserves,
                total_supply=state.total_supply,
            ))
        self._notify()


class HttpReserveSource(DataFeed, ReserveSource):
    """
    Authoritative reserve state served as JSON over HTTP.

    The payload uses the ReserveState wire shape (totalSupply, totalReserves,
    collateralizationRatio, assets, reserveRootHash). `watch()` polls the
    endpoint and notifies listeners whenever the root hash changes.
    """

    def __init__(
        self,
        url: str,
        poll_interval: float = 60.0,
        session: Optional[aiohttp.ClientSession] = None,
        **kwargs,
    ):
        kwargs.setdefault("rate_limit", 2.0)
        kwargs.setdefault("cache_ttl", 0)
        DataFeed.__init__(self, name="reserves", session=session, **kwargs)
        ReserveSource.__init__(self)
        self.url = url
        self.poll_interval = poll_interval
        self._last_root: Optional[str] = None
        self._watch_task: Optional[asyncio.Task] = None

    async def _fetch(self) -> ReserveState:
        data = await self._get_json(self.url)
        try:
            return ReserveState.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise PayloadError(f"{self.name}: malformed reserve payload: {e}")

    async def fetch_reserve_state(self) -> ReserveState:
        state = await self.fetch_with_retry()
        self._last_root = state.reserve_root_hash
        return state

    async def poll_once(self) -> bool:
        """Fetch once and notify if the root changed; returns True on change"""
        previous = self._last_root
        state = await self.fetch_reserve_state()
        if previous is not None and state.reserve_root_hash != previous:
            logger.info(f"Reserve root changed: {previous[:16]}... -> {state.reserve_root_hash[:16]}...")
            self._notify()
            return True
        return False

    async def watch(self):
        while True:
            try:
                await self.poll_once()
            except FeedError as e:
                logger.warning(f"Reserve watch poll failed: {e}")
            await asyncio.sleep(self.poll_interval)

    def start_watch(self):
        if self._watch_task is None or self._watch_task.done():
            self._watch_task = asyncio.get_running_loop().create_task(self.watch())

    async def stop_watch(self):
        if self._watch_task is not None:
            self._watch_task.cancel()
            try:
                await self._watch_task
            except asyncio.CancelledError:
                pass
            self._watch_task = None

    async def close(self):
        await self.stop_watch()
        await DataFeed.close(self)
