"""
Reserve Oracle Runner

Wires the configured components together and runs the update loop:
venue polling -> price refresh -> reserve reconciliation.

Usage:
    python -m reserve_oracle.runner
    python -m reserve_oracle.runner --config reserve_oracle.yaml --interval 60
    python -m reserve_oracle.runner --once
"""

import asyncio
import argparse
import logging
import signal
import time
from typing import Callable, Dict, List, Optional

from .access import AccessControl, Capability
from .aggregator import PriceFeedAggregator
from .attestation.quorum import AttestationQuorum
from .config import ReserveOracleConfig, generate_default_config, load_config
from .errors import NetworkError
from .events import Event, EventBus
from .feeds.rounds import VenueRoundFeed
from .feeds.sources import DirectFeedSource, ManualSubmissionSource, TimeWeightedAverageSource
from .feeds.venues import create_venue
from .models.feed import SourceKind
from .models.reserve import ReconciliationSnapshot
from .reconciliation.attestations import AttestationFeed
from .reconciliation.engine import ReconciliationEngine
from .reconciliation.reserves import HttpReserveSource, ReserveLedger, ReserveSource
from .units import from_fixed

logger = logging.getLogger(__name__)


class ReserveOracleRunner:
    """
    Runs the reserve oracle against live venues and endpoints.
    """

    def __init__(
        self,
        config: ReserveOracleConfig,
        update_interval: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.update_interval = update_interval or config.update_interval_seconds

        self.events = EventBus()
        self.events.on(None, self._log_event)
        self.access = AccessControl(config.capability_grants())

        pf = config.price_feeds
        self.direct = DirectFeedSource(max_round_age=pf.max_round_age, max_clock_skew=pf.max_clock_skew)
        self.manual = ManualSubmissionSource(expiry=pf.manual_expiry)
        self.aggregator = PriceFeedAggregator(
            self.access,
            adapters=[self.direct, self.manual, TimeWeightedAverageSource()],
            hard_ceiling_bps=pf.hard_ceiling_bps,
            events=self.events,
            clock=clock,
        )

        self.round_feeds: Dict[str, VenueRoundFeed] = {}
        self._register_feeds(clock)

        self.quorum = AttestationQuorum(
            self.access,
            quorum=config.attestation.quorum,
            events=self.events,
            clock=clock,
            max_clock_skew=config.attestation.max_clock_skew,
        )
        if config.attestation.attestors:
            admin = self._service_identity(Capability.ADMIN)
            for attestor in config.attestation.attestors:
                self.quorum.add_attestor(admin, attestor.name, attestor.public_key)

        rc = config.reconciliation
        self.reserve_source: ReserveSource
        if rc.reserve_url:
            self.reserve_source = HttpReserveSource(rc.reserve_url, poll_interval=rc.reserve_poll_interval)
        else:
            self.reserve_source = ReserveLedger(self.aggregator, events=self.events, clock=clock)

        self.engine: Optional[ReconciliationEngine] = None
        if rc.attestation_endpoint:
            headers = {"Authorization": f"Bearer {rc.api_token}"} if rc.api_token else None
            self.engine = ReconciliationEngine(
                self.reserve_source,
                AttestationFeed(rc.attestation_endpoint, headers=headers, clock=clock),
                trusted_keys=rc.trusted_keys,
                tolerance=rc.tolerance,
                cache_ttl=rc.cache_ttl,
                required_ratio=rc.required_ratio,
                require_root_match=rc.require_root_match,
                quorum=self.quorum,
                refresh_interval=rc.refresh_interval,
                clock=clock,
            )

        self._running = False
        self._update_count = 0

    def _service_identity(self, capability: Capability) -> str:
        holders = sorted(self.access.holders(capability))
        if not holders:
            raise ValueError(f"no configured operator holds {capability.value}")
        return holders[0]

    def _register_feeds(self, clock: Callable[[], float]):
        pf = self.config.price_feeds
        feeds = pf.feeds
        if not feeds:
            return

        admin = self._service_identity(Capability.ORACLE_ADMIN)
        venues = self.config.get_enabled_venues()
        weights = {v.name: v.weight for v in venues}

        for definition in feeds:
            kinds = [(definition.source_kind, definition.primary_source)]
            if definition.fallback_source:
                kinds.append((definition.fallback_kind, definition.fallback_source))

            for kind, descriptor in kinds:
                if kind != SourceKind.DIRECT_FEED.value or descriptor in self.round_feeds:
                    continue
                round_feed = VenueRoundFeed(
                    symbol=descriptor,
                    venues=[create_venue(v.name, cache_ttl=v.cache_ttl) for v in venues],
                    weights=weights,
                    decimals=pf.round_decimals,
                    trim_pct=pf.trim_pct,
                    min_venues=pf.min_venues,
                    max_spread_bps=pf.max_spread_bps,
                    clock=clock,
                )
                self.round_feeds[descriptor] = round_feed
                self.direct.register(descriptor, round_feed)

            self.aggregator.register_feed(
                admin,
                asset=definition.asset,
                symbol=definition.symbol,
                primary_source=definition.primary_source,
                source_kind=SourceKind(definition.source_kind),
                heartbeat=definition.heartbeat,
                deviation_threshold_bps=definition.deviation_threshold_bps,
                fallback_source=definition.fallback_source or None,
                fallback_kind=SourceKind(definition.fallback_kind) if definition.fallback_source else None,
            )

    @staticmethod
    def _log_event(event: Event):
        logger.debug(f"event {event.to_dict()}")

    async def start(self):
        """Start the oracle runner"""
        logger.info(f"Starting Reserve Oracle (config v{self.config.config_version})")
        logger.info(f"Update interval: {self.update_interval}s")
        logger.info(f"Feeds: {', '.join(self.aggregator.supported_assets()) or 'none'}")
        logger.info(f"Reconciliation: {'enabled' if self.engine else 'disabled'}")
        logger.info("-" * 60)

        self._running = True
        if isinstance(self.reserve_source, HttpReserveSource):
            self.reserve_source.start_watch()

        try:
            while self._running:
                await self.update_cycle()
                await asyncio.sleep(self.update_interval)
        except asyncio.CancelledError:
            logger.info("Oracle runner cancelled")
        finally:
            await self.stop()

    async def stop(self):
        """Stop the oracle runner"""
        self._running = False
        for round_feed in self.round_feeds.values():
            await round_feed.close()
        if self.engine is not None:
            await self.engine.close()
        else:
            await self.reserve_source.close()
        logger.info("Oracle runner stopped")

    async def update_cycle(self) -> Optional[ReconciliationSnapshot]:
        """Single update cycle"""
        self._update_count += 1

        await asyncio.gather(*(f.poll() for f in self.round_feeds.values()))
        results = self.aggregator.refresh_all()

        snapshot = None
        if self.engine is not None:
            try:
                snapshot = await self.engine.get(force_refresh=True)
            except NetworkError as e:
                logger.error(f"Reconciliation failed: {e}")
                snapshot = self.engine.cached

        self._log_update(results, snapshot)
        return snapshot

    def _log_update(self, results: Dict, snapshot: Optional[ReconciliationSnapshot]):
        logger.info(f"[{self._update_count}] price refresh")
        for asset, result in results.items():
            if isinstance(result, int):
                logger.info(f"  {asset}: ${from_fixed(result):,.4f}")
            else:
                logger.info(f"  {asset}: FAILED ({result})")

        if snapshot is not None:
            reserve = snapshot.reserve
            logger.info(
                f"  Reserves: ${from_fixed(reserve.total_reserves):,.2f} | "
                f"Supply: {from_fixed(reserve.total_supply):,.2f} | "
                f"Ratio: {reserve.collateralization_ratio_decimal} | "
                f"Verified: {snapshot.verified} "
                f"({len(snapshot.valid_attestations)}/{len(snapshot.attestations)})"
            )
        logger.info("-" * 60)


async def run_once(config: ReserveOracleConfig) -> Optional[ReconciliationSnapshot]:
    """
    Run a single update cycle (useful for testing).

    Returns:
        The reconciliation snapshot, or None when reconciliation is disabled
    """
    runner = ReserveOracleRunner(config)
    try:
        return await runner.update_cycle()
    finally:
        await runner.stop()


def main(argv: Optional[List[str]] = None):
    """Main entry point"""
    parser = argparse.ArgumentParser(description="Reserve Oracle Runner")
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="Path to YAML/JSON config (default: search standard locations)"
    )
    parser.add_argument(
        "--interval", "-i",
        type=int,
        default=None,
        help="Update interval in seconds (default: from config)"
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run once and exit"
    )
    parser.add_argument(
        "--generate-config",
        metavar="PATH",
        help="Write a default config file and exit"
    )

    args = parser.parse_args(argv)

    if args.generate_config:
        fmt = "json" if args.generate_config.endswith(".json") else "yaml"
        generate_default_config(args.generate_config, fmt)
        return

    config = load_config(args.config)

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format='%(asctime)s | %(levelname)s | %(name)s | %(message)s',
        datefmt='%H:%M:%S',
        filename=config.log_file or None,
    )

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    try:
        if args.once:
            snapshot = loop.run_until_complete(run_once(config))
            if snapshot is not None:
                print(f"\nTotal reserves: {from_fixed(snapshot.reserve.total_reserves):,.2f}")
                print(f"Total supply:   {from_fixed(snapshot.reserve.total_supply):,.2f}")
                print(f"Ratio:          {snapshot.reserve.collateralization_ratio_decimal}")
                print(f"Verified:       {snapshot.verified}")
        else:
            runner = ReserveOracleRunner(config, update_interval=args.interval)

            def signal_handler(sig, frame):
                logger.info("Shutting down...")
                runner._running = False

            signal.signal(signal.SIGINT, signal_handler)
            loop.run_until_complete(runner.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.close()


if __name__ == "__main__":
    main()
