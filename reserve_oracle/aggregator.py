"""
Price Feed Aggregator

Owns per-asset feed configuration and produces a validated current price:
- Primary source with fallback on failure or rejected data
- Soft deviation threshold (alert) and global hard ceiling (reject)
- Heartbeat-based staleness on the read path

Every mutating operation computes first, mutates last and notifies only
after the mutation is final. A failed check leaves the feed untouched.
"""

import threading
import time
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Optional, Union
import logging

from .access import AccessControl, Capability
from .errors import (
    DeviationError,
    NotFoundError,
    ReserveOracleError,
    SourceUnavailableError,
    StaleDataError,
    ValidationError,
)
from .events import (
    DeviationExceeded,
    Event,
    EventBus,
    FallbackActivated,
    FeedReconfigured,
    FeedRegistered,
    PriceUpdated,
)
from .feeds.sources import (
    DirectFeedSource,
    ManualSubmissionSource,
    PriceSourceAdapter,
    TimeWeightedAverageSource,
)
from .models.feed import PriceFeed, SourceKind
from .units import BPS, deviation_bps

logger = logging.getLogger(__name__)

PriceConsumer = Callable[[str, int], None]

DEFAULT_HARD_CEILING_BPS = 2000


class PriceFeedAggregator:
    """
    Multi-source price aggregator with fallback and deviation protection.

    Usage:
        agg = PriceFeedAggregator(access, adapters=[direct, manual])
        agg.register_feed("ops", "paxg", "PAXG/USD", "PAXG/USD",
                          SourceKind.DIRECT_FEED, heartbeat=3600,
                          deviation_threshold_bps=500)
        agg.refresh_price("paxg")
        agg.get_latest_price("paxg")
    """

    def __init__(
        self,
        access: AccessControl,
        adapters: Optional[Iterable[PriceSourceAdapter]] = None,
        hard_ceiling_bps: int = DEFAULT_HARD_CEILING_BPS,
        events: Optional[EventBus] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize aggregator.

        Args:
            access: Capability table for privileged operations
            adapters: Source adapters, one per SourceKind (defaults to a
                DirectFeed, ManualSubmission and TimeWeightedAverage set)
            hard_ceiling_bps: Global ceiling; larger jumps are rejected
            events: Notification bus (a private one is created if omitted)
            clock: Returns the current Unix time
        """
        if not 0 < hard_ceiling_bps <= BPS * 100:
            raise ValidationError("hard_ceiling_bps out of range")

        self.access = access
        self.hard_ceiling_bps = hard_ceiling_bps
        self.events = events or EventBus()
        self._clock = clock

        if adapters is None:
            adapters = [DirectFeedSource(), ManualSubmissionSource(), TimeWeightedAverageSource()]
        self._adapters: Dict[SourceKind, PriceSourceAdapter] = {a.kind: a for a in adapters}

        # Insertion-ordered: doubles as the supported-asset list
        self._feeds: Dict[str, PriceFeed] = {}
        self._consumers: List[PriceConsumer] = []
        self._lock = threading.RLock()

    # ============ Configuration ============

    def adapter(self, kind: SourceKind) -> PriceSourceAdapter:
        if kind not in self._adapters:
            raise ValidationError(f"no adapter configured for {kind.value}")
        return self._adapters[kind]

    def add_price_consumer(self, consumer: PriceConsumer):
        """Register a downstream consumer called with (asset, price) after each commit"""
        self._consumers.append(consumer)

    def register_feed(
        self,
        caller: str,
        asset: str,
        symbol: str,
        primary_source: str,
        source_kind: SourceKind,
        heartbeat: int,
        deviation_threshold_bps: int,
        fallback_source: Optional[str] = None,
        fallback_kind: Optional[SourceKind] = None,
    ) -> PriceFeed:
        self.access.require(caller, Capability.ORACLE_ADMIN)

        with self._lock:
            if not asset:
                raise ValidationError("asset identity is required")
            if asset in self._feeds:
                raise ValidationError(f"feed already registered for {asset}")
            self._validate_config(
                primary_source, source_kind, heartbeat, deviation_threshold_bps,
                fallback_source, fallback_kind,
            )

            feed = PriceFeed(
                asset=asset,
                symbol=symbol,
                primary_source=primary_source,
                source_kind=source_kind,
                heartbeat=int(heartbeat),
                deviation_threshold_bps=int(deviation_threshold_bps),
                fallback_source=fallback_source or None,
                fallback_kind=fallback_kind if fallback_source else None,
            )
            self._feeds[asset] = feed

        logger.info(
            f"Feed registered: {asset} ({symbol}) primary={source_kind.value}:{primary_source} "
            f"heartbeat={heartbeat}s threshold={deviation_threshold_bps}bps"
        )
        self.events.emit(FeedRegistered(
            asset=asset,
            symbol=symbol,
            source_kind=source_kind.value,
            heartbeat=feed.heartbeat,
            deviation_threshold_bps=feed.deviation_threshold_bps,
        ))
        return replace(feed)

    def reconfigure_feed(
        self,
        caller: str,
        asset: str,
        symbol: str,
        primary_source: str,
        source_kind: SourceKind,
        heartbeat: int,
        deviation_threshold_bps: int,
        fallback_source: Optional[str] = None,
        fallback_kind: Optional[SourceKind] = None,
    ) -> PriceFeed:
        """Overwrite mutable configuration; last price and time are kept"""
        self.access.require(caller, Capability.ORACLE_ADMIN)

        with self._lock:
            feed = self._require_feed(asset)
            self._validate_config(
                primary_source, source_kind, heartbeat, deviation_threshold_bps,
                fallback_source, fallback_kind,
            )
            feed.symbol = symbol
            feed.primary_source = primary_source
            feed.source_kind = source_kind
            feed.heartbeat = int(heartbeat)
            feed.deviation_threshold_bps = int(deviation_threshold_bps)
            feed.fallback_source = fallback_source or None
            feed.fallback_kind = fallback_kind if fallback_source else None
            snapshot = replace(feed)

        logger.info(f"Feed reconfigured: {asset}")
        self.events.emit(self._reconfigured_event(snapshot))
        return snapshot

    def set_feed_active(self, caller: str, asset: str, active: bool) -> PriceFeed:
        """Activate or deactivate a feed (feeds are never deleted)"""
        self.access.require(caller, Capability.ORACLE_ADMIN)

        with self._lock:
            feed = self._require_feed(asset)
            feed.active = bool(active)
            snapshot = replace(feed)

        logger.info(f"Feed {asset} {'activated' if active else 'deactivated'}")
        self.events.emit(self._reconfigured_event(snapshot))
        return snapshot

    def _validate_config(
        self,
        primary_source: str,
        source_kind: SourceKind,
        heartbeat: int,
        deviation_threshold_bps: int,
        fallback_source: Optional[str],
        fallback_kind: Optional[SourceKind],
    ):
        if not primary_source:
            raise ValidationError("primary source is required")
        self.adapter(source_kind)
        if heartbeat <= 0:
            raise ValidationError("heartbeat must be positive")
        if not 0 < deviation_threshold_bps <= self.hard_ceiling_bps:
            raise ValidationError(
                f"deviation threshold must be in (0, {self.hard_ceiling_bps}] bps"
            )
        if fallback_source:
            if fallback_kind is None:
                raise ValidationError("fallback kind is required with a fallback source")
            self.adapter(fallback_kind)

    @staticmethod
    def _reconfigured_event(feed: PriceFeed) -> FeedReconfigured:
        return FeedReconfigured(
            asset=feed.asset,
            source_kind=feed.source_kind.value,
            heartbeat=feed.heartbeat,
            deviation_threshold_bps=feed.deviation_threshold_bps,
            active=feed.active,
        )

    # ============ Price updates ============

    def refresh_price(self, asset: str) -> int:
        """
        Pull a new price from the feed's sources and commit it.

        The primary source is read first; if it is unavailable or returns
        a non-positive price the fallback is tried. The accepted value is
        tagged with the kind of the source that actually produced it.

        Raises:
            SourceUnavailableError: primary and fallback both failed
            DeviationError: jump exceeds the hard ceiling (state unchanged)
        """
        events: List[Event] = []
        try:
            with self._lock:
                feed = self._require_active(asset)
                now = self._now()
                price, kind = self._read_sources(feed, now, events)
                self._apply_price(feed, price, kind, now, events)
        finally:
            self.events.emit_all(events)
        self._forward(asset, price)
        return price

    def submit_manual_price(self, caller: str, asset: str, price: int) -> int:
        """Privileged price write that bypasses adapters but not the deviation policy"""
        self.access.require(caller, Capability.MANUAL_ORACLE)
        if price <= 0:
            raise ValidationError("price must be positive")

        events: List[Event] = []
        try:
            with self._lock:
                feed = self._require_active(asset)
                now = self._now()
                self._apply_price(feed, int(price), SourceKind.MANUAL_SUBMISSION, now, events)
            logger.info(f"Manual price accepted for {asset} from {caller}")
        finally:
            self.events.emit_all(events)
        self._forward(asset, int(price))
        return int(price)

    def refresh_all(self) -> Dict[str, Union[int, ReserveOracleError]]:
        """Refresh every active feed; per-asset failures are returned, not raised"""
        results: Dict[str, Union[int, ReserveOracleError]] = {}
        for asset in self.supported_assets():
            feed = self._feeds[asset]
            if not feed.active:
                continue
            try:
                results[asset] = self.refresh_price(asset)
            except ReserveOracleError as e:
                logger.warning(f"Refresh failed for {asset}: {e}")
                results[asset] = e
        return results

    def _read_sources(self, feed: PriceFeed, now: int, events: List[Event]):
        attempts = [(feed.source_kind, feed.primary_source)]
        if feed.has_fallback:
            attempts.append((feed.fallback_kind, feed.fallback_source))

        failures = []
        for i, (kind, descriptor) in enumerate(attempts):
            try:
                price = self.adapter(kind).fetch_price(descriptor, now)
                if price <= 0:
                    raise SourceUnavailableError(f"{descriptor}: non-positive price {price}")
                return price, kind
            except (SourceUnavailableError, ValidationError) as e:
                failures.append(f"{kind.value}:{descriptor}: {e}")
                if i == 0:
                    reason = str(e)
                    logger.warning(f"{feed.asset}: primary source failed ({reason})")
                    events.append(FallbackActivated(asset=feed.asset, reason=reason))

        raise SourceUnavailableError(
            f"{feed.asset}: no source available ({'; '.join(failures)})"
        )

    def _apply_price(
        self,
        feed: PriceFeed,
        new_price: int,
        kind: SourceKind,
        now: int,
        events: List[Event],
    ):
        old_price = feed.last_price
        deviation = deviation_bps(old_price, new_price)

        if old_price > 0 and deviation > self.hard_ceiling_bps:
            logger.error(
                f"{feed.asset}: rejected price {new_price} ({deviation}bps from {old_price})"
            )
            events.append(DeviationExceeded(
                asset=feed.asset, old=old_price, new=new_price,
                deviation_bps=deviation, rejected=True,
            ))
            raise DeviationError(feed.asset, old_price, new_price, deviation)

        if old_price > 0 and deviation > feed.deviation_threshold_bps:
            logger.warning(
                f"{feed.asset}: price moved {deviation}bps "
                f"(threshold {feed.deviation_threshold_bps}bps)"
            )
            events.append(DeviationExceeded(
                asset=feed.asset, old=old_price, new=new_price, deviation_bps=deviation,
            ))

        # All checks passed; the only writes of the operation
        feed.last_price = new_price
        feed.last_update = max(feed.last_update, now)

        events.append(PriceUpdated(
            asset=feed.asset,
            price=new_price,
            source_kind=kind.value,
            timestamp=feed.last_update,
        ))

    def _forward(self, asset: str, price: int):
        for consumer in self._consumers:
            try:
                consumer(asset, price)
            except Exception as e:
                logger.error(f"Price consumer failed for {asset}: {e}")

    # ============ Reads ============

    def get_latest_price(self, asset: str) -> int:
        """
        Cached price if within heartbeat.

        Raises:
            NotFoundError: unknown asset
            ValidationError: feed inactive
            StaleDataError: no price yet, or now > last_update + heartbeat
        """
        feed = self._require_active(asset)
        now = self._now()
        if not feed.has_price:
            raise StaleDataError(f"{asset}: no price has been accepted yet")
        if feed.is_stale_at(now):
            raise StaleDataError(
                f"{asset}: last update {now - feed.last_update}s ago exceeds "
                f"heartbeat {feed.heartbeat}s"
            )
        return feed.last_price

    def is_stale(self, asset: str) -> bool:
        feed = self._feeds.get(asset)
        if feed is None or not feed.active:
            return True
        return feed.is_stale_at(self._now())

    def get_feed(self, asset: str) -> PriceFeed:
        return replace(self._require_feed(asset))

    def supported_assets(self) -> List[str]:
        return list(self._feeds)

    def get_status(self) -> Dict:
        return {
            "hard_ceiling_bps": self.hard_ceiling_bps,
            "feeds": {
                asset: {**feed.to_dict(), "stale": self.is_stale(asset)}
                for asset, feed in self._feeds.items()
            },
            "adapters": {kind.value: a.get_status() for kind, a in self._adapters.items()},
        }

    # ============ Helpers ============

    def _now(self) -> int:
        return int(self._clock())

    def _require_feed(self, asset: str) -> PriceFeed:
        feed = self._feeds.get(asset)
        if feed is None:
            raise NotFoundError(f"no feed registered for {asset}")
        return feed

    def _require_active(self, asset: str) -> PriceFeed:
        feed = self._require_feed(asset)
        if not feed.active:
            raise ValidationError(f"feed for {asset} is inactive")
        return feed
