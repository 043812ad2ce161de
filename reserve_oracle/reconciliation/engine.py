"""
Reconciliation Engine

Off-process cross-check of authoritative reserve state against independently
signed auditor attestations:
- Concurrent fetch of reserve state and attestations
- Per-attestation signature and data checks (within tolerance)
- TTL cache that survives failed refreshes
- Merkle inclusion proofs per reserve asset
- Cancellable subscriptions driven by reserve updates

Runs on a single asyncio loop. Concurrent refresh requests share one
in-flight task.
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Set, Union
import logging

from .attestations import AttestationFeed
from .reserves import ReserveSource
from ..attestation.quorum import AttestationQuorum
from ..crypto.merkle import MerkleCommitment, MerkleProof, ProofStep, verify_proof
from ..crypto.signatures import SignatureVerifier, normalize_public_key
from ..errors import NetworkError, NotFoundError
from ..feeds.base import FeedError
from ..models.reserve import (
    AttestationCheck,
    AttestationData,
    AuditCrossCheck,
    ReconciliationSnapshot,
    ReserveState,
    SignedAttestation,
)
from ..units import RATIO_DECIMALS, RATIO_PRECISION, from_fixed

logger = logging.getLogger(__name__)

# 0.001 token at 18 decimals
DEFAULT_TOLERANCE = 10**15

SnapshotCallback = Callable[
    [Optional[ReconciliationSnapshot], Optional[Exception]],
    Union[None, Awaitable[None]],
]


class Subscription:
    """
    Handle returned by ReconciliationEngine.subscribe.

    After unsubscribe() returns, the callback is never invoked again:
    pending deliveries are cancelled and the active flag is checked right
    before each call.
    """

    def __init__(self, engine: "ReconciliationEngine", callback: SnapshotCallback):
        self._engine = engine
        self._callback = callback
        self._loop = asyncio.get_running_loop()
        self._pending: Set[asyncio.Task] = set()
        self.active = True

    def _on_reserve_update(self):
        # Reserve sources may notify from another thread
        self._loop.call_soon_threadsafe(self._spawn)

    def _spawn(self):
        if not self.active:
            return
        task = self._loop.create_task(self._deliver())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self):
        snapshot, error = None, None
        try:
            snapshot = await self._engine.get(force_refresh=True)
        except Exception as e:
            error = e

        if not self.active:
            return
        try:
            result = self._callback(snapshot, error)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.error(f"Subscriber callback error: {e}")

    @property
    def pending(self) -> int:
        return len(self._pending)

    def unsubscribe(self):
        if not self.active:
            return
        self.active = False
        self._engine._remove_subscription(self)
        for task in list(self._pending):
            task.cancel()


class ReconciliationEngine:
    """
    Cross-validates reserve state against signed attestations.

    A snapshot is verified iff at least one attestation has a valid
    signature from a trusted auditor key and matches the authoritative
    supply and reserves within `tolerance` (and the root hash, unless
    `require_root_match` is disabled).

    Usage:
        engine = ReconciliationEngine(ledger, AttestationFeed(url),
                                      trusted_keys={"auditor-1": pubkey_hex})
        snapshot = await engine.get()
        proof = await engine.build_proof("gold-vault-1")
        engine.verify_proof(proof.root, proof.leaf, proof.path)
    """

    def __init__(
        self,
        reserve_source: ReserveSource,
        attestation_feed: AttestationFeed,
        trusted_keys: Optional[Dict[str, str]] = None,
        tolerance: int = DEFAULT_TOLERANCE,
        cache_ttl: float = 3600.0,
        required_ratio: int = RATIO_PRECISION,
        require_root_match: bool = True,
        quorum: Optional[AttestationQuorum] = None,
        refresh_interval: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        if tolerance < 0:
            raise ValueError("tolerance must be non-negative")

        self.reserve_source = reserve_source
        self.attestation_feed = attestation_feed
        self.trusted_keys: Dict[str, str] = {
            attestor: normalize_public_key(key) for attestor, key in (trusted_keys or {}).items()
        }
        self.tolerance = tolerance
        self.cache_ttl = cache_ttl
        self.required_ratio = required_ratio
        self.require_root_match = require_root_match
        self.quorum = quorum
        self.refresh_interval = refresh_interval if refresh_interval is not None else cache_ttl
        self._clock = clock

        self._cache: Optional[ReconciliationSnapshot] = None
        self._cache_time: float = 0.0
        self._inflight: Optional[asyncio.Task] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._subscriptions: Set[Subscription] = set()

        self._refresh_count = 0
        self._fetch_count = 0
        self._last_error: Optional[str] = None

    # ============ Cache ============

    @property
    def cached(self) -> Optional[ReconciliationSnapshot]:
        return self._cache

    @property
    def cache_expired(self) -> bool:
        return self._cache is None or self._clock() - self._cache_time > self.cache_ttl

    async def refresh(self) -> ReconciliationSnapshot:
        """
        Fetch, verify and cache a new snapshot.

        Concurrent callers share the same in-flight fetch. On failure the
        previous snapshot stays cached and NetworkError is raised.
        """
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.get_running_loop().create_task(self._do_refresh())
        return await asyncio.shield(self._inflight)

    async def get(self, force_refresh: bool = False) -> ReconciliationSnapshot:
        if force_refresh or self.cache_expired:
            return await self.refresh()
        return self._cache

    async def _do_refresh(self) -> ReconciliationSnapshot:
        self._fetch_count += 1
        try:
            reserve, attestations = await asyncio.gather(
                self.reserve_source.fetch_reserve_state(),
                self.attestation_feed.fetch_attestations(),
            )
            checks = [self.check_attestation(a, reserve) for a in attestations]
            verified = any(c.passed for c in checks)

            snapshot = ReconciliationSnapshot(
                reserve=reserve,
                attestations=checks,
                verified=verified,
                fetched_at=self._clock(),
                audit=self._cross_check_audit(reserve),
            )
        except Exception as e:
            # Any failure leaves the previous snapshot in place
            self._last_error = str(e)
            logger.error(f"Reconciliation refresh failed: {e!r}")
            raise NetworkError(f"reconciliation refresh failed: {e}") from e
        finally:
            self._inflight = None

        self._cache = snapshot
        self._cache_time = snapshot.fetched_at
        self._refresh_count += 1
        self._last_error = None

        passed = sum(1 for c in checks if c.passed)
        logger.info(
            f"Reconciled reserves: ratio={reserve.collateralization_ratio_decimal} "
            f"attestations={passed}/{len(checks)} verified={verified}"
        )
        return snapshot

    # ============ Verification ============

    def verify_attestation(self, attestation: SignedAttestation) -> bool:
        """Signature check against the trusted key of the named auditor"""
        key = self.trusted_keys.get(attestation.attestor_id)
        if key is None:
            logger.warning(f"Unknown auditor id: {attestation.attestor_id}")
            return False
        return SignatureVerifier.verify(key, attestation.data.signing_payload(), attestation.signature)

    def matches_reserve(self, data: AttestationData, reserve: ReserveState) -> bool:
        supply_ok = abs(data.total_supply - reserve.total_supply) <= self.tolerance
        reserves_ok = abs(data.total_reserves - reserve.total_reserves) <= self.tolerance
        root_ok = (
            not self.require_root_match
            or data.reserve_root_hash.lower() == reserve.reserve_root_hash.lower()
        )
        return supply_ok and reserves_ok and root_ok

    def check_attestation(self, attestation: SignedAttestation, reserve: ReserveState) -> AttestationCheck:
        """Both checks fail closed: a malformed attestation fails, it never raises"""
        try:
            signature_valid = self.verify_attestation(attestation)
        except (AttributeError, TypeError, ValueError) as e:
            logger.warning(f"Malformed attestation from {attestation.attestor_id!r}: {e}")
            signature_valid = False
        try:
            data_valid = self.matches_reserve(attestation.data, reserve)
        except (AttributeError, TypeError, ValueError) as e:
            logger.warning(f"Malformed attestation data from {attestation.attestor_id!r}: {e}")
            data_valid = False
        return AttestationCheck(
            attestation=attestation,
            signature_valid=signature_valid,
            data_valid=data_valid,
        )

    def _cross_check_audit(self, reserve: ReserveState) -> Optional[AuditCrossCheck]:
        if self.quorum is None:
            return None
        try:
            latest = self.quorum.get_latest_verified()
        except NotFoundError:
            return None

        report = latest.report
        consistent = (
            abs(report.declared_reserve - reserve.total_reserves) <= self.tolerance
            and abs(report.declared_supply - reserve.total_supply) <= self.tolerance
        )
        if not consistent:
            logger.warning(
                f"Audit report {report.id} disagrees with authoritative reserves "
                f"(declared ratio {latest.reserve_ratio_decimal}, "
                f"observed {reserve.collateralization_ratio_decimal})"
            )
        return AuditCrossCheck(
            report_id=report.id,
            declared_reserve=report.declared_reserve,
            declared_supply=report.declared_supply,
            reserve_ratio=latest.reserve_ratio,
            consistent=consistent,
        )

    async def verify_reserve_ratio(self) -> Dict[str, Any]:
        """Force a refresh and compare the collateralization ratio to the requirement"""
        snapshot = await self.get(force_refresh=True)
        current = snapshot.reserve.collateralization_ratio
        return {
            "is_valid": current >= self.required_ratio,
            "required_ratio": str(from_fixed(self.required_ratio, RATIO_DECIMALS)),
            "current_ratio": str(from_fixed(current, RATIO_DECIMALS)),
            "timestamp": datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat(),
            "attestations_valid": snapshot.verified,
        }

    async def get_historical(self, days: int = 30):
        try:
            return await self.attestation_feed.get_history(days)
        except FeedError as e:
            raise NetworkError(f"history fetch failed: {e}") from e

    # ============ Proofs ============

    async def build_proof(self, asset_id: str) -> MerkleProof:
        """Inclusion proof for one reserve asset in the current snapshot"""
        snapshot = await self.get()
        commitment = MerkleCommitment(snapshot.reserve.assets)
        proof = commitment.proof_for(asset_id)
        published = snapshot.reserve.reserve_root_hash
        if published and published.lower() != proof.root:
            logger.warning(f"Recomputed root {proof.root[:16]}... differs from published {published[:16]}...")
        return proof

    @staticmethod
    def verify_proof(root: str, leaf: str, path: Iterable[ProofStep]) -> bool:
        return verify_proof(root, leaf, path)

    # ============ Subscriptions ============

    def subscribe(self, callback: SnapshotCallback) -> Subscription:
        """
        Call `callback(snapshot, error)` after every authoritative update.

        Each update triggers a forced refresh; on failure the callback gets
        (None, NetworkError). Must be called from the engine's event loop.
        """
        subscription = Subscription(self, callback)
        self._subscriptions.add(subscription)
        self.reserve_source.add_listener(subscription._on_reserve_update)
        return subscription

    def _remove_subscription(self, subscription: Subscription):
        self.reserve_source.remove_listener(subscription._on_reserve_update)
        self._subscriptions.discard(subscription)

    # ============ Lifecycle ============

    async def start(self) -> ReconciliationSnapshot:
        """Initial refresh, then refresh every `refresh_interval` seconds"""
        snapshot = await self.refresh()
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.get_running_loop().create_task(self._run())
        return snapshot

    async def _run(self):
        while True:
            await asyncio.sleep(self.refresh_interval)
            try:
                await self.refresh()
            except NetworkError as e:
                logger.warning(f"Periodic refresh failed, serving cached snapshot: {e}")

    async def stop(self):
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        for subscription in list(self._subscriptions):
            subscription.unsubscribe()

    async def close(self):
        await self.stop()
        await self.attestation_feed.close()
        await self.reserve_source.close()

    def get_status(self) -> Dict[str, Any]:
        return {
            "cached": self._cache is not None,
            "verified": self._cache.verified if self._cache else None,
            "cache_age": self._clock() - self._cache_time if self._cache else None,
            "cache_expired": self.cache_expired,
            "refresh_count": self._refresh_count,
            "fetch_count": self._fetch_count,
            "last_error": self._last_error,
            "subscriptions": len(self._subscriptions),
            "running": self._loop_task is not None and not self._loop_task.done(),
            "attestation_feed": self.attestation_feed.get_status(),
        }
