"""Shared fixtures for reserve oracle tests"""

import asyncio
from typing import List, Optional

import pytest

from reserve_oracle.access import AccessControl, Capability
from reserve_oracle.crypto.signatures import Signer
from reserve_oracle.events import EventBus, EventRecorder
from reserve_oracle.feeds.base import FeedError
from reserve_oracle.models.reserve import AttestationData, ReserveState, SignedAttestation
from reserve_oracle.reconciliation.reserves import ReserveSource


class FakeClock:
    """Manually advanced Unix clock"""

    def __init__(self, now: float = 1_700_000_000):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeReserveSource(ReserveSource):
    """Serves a fixed ReserveState; raises FeedError when `fail` is set, or `error` when given"""

    def __init__(self, state: ReserveState, delay: float = 0.0):
        super().__init__()
        self.state = state
        self.delay = delay
        self.fail = False
        self.error: Optional[Exception] = None
        self.calls = 0

    def update(self, state: ReserveState):
        self.state = state
        self._notify()

    async def fetch_reserve_state(self) -> ReserveState:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise FeedError("reserves: connection refused")
        if self.error is not None:
            raise self.error
        return self.state


class FakeAttestationFeed:
    """In-memory stand-in for AttestationFeed"""

    def __init__(self, attestations: Optional[List[SignedAttestation]] = None):
        self.attestations = list(attestations or [])
        self.history: List[dict] = []
        self.fail = False
        self.calls = 0
        self.closed = False

    async def fetch_attestations(self) -> List[SignedAttestation]:
        self.calls += 1
        if self.fail:
            raise FeedError("attestations: HTTP 503")
        return list(self.attestations)

    async def get_history(self, days: int = 30):
        if self.fail:
            raise FeedError("attestations: HTTP 503")
        return list(self.history)

    async def close(self):
        self.closed = True

    def get_status(self):
        return {"name": "fake-attestations", "calls": self.calls}


def sign_attestation(signer: Signer, attestor_id: str, state: ReserveState, timestamp: int = 0,
                     **overrides) -> SignedAttestation:
    """Build an attestation over `state` (optionally with altered fields)"""
    data = AttestationData(
        total_supply=overrides.get("total_supply", state.total_supply),
        total_reserves=overrides.get("total_reserves", state.total_reserves),
        collateralization_ratio=state.collateralization_ratio,
        reserve_root_hash=overrides.get("reserve_root_hash", state.reserve_root_hash),
        timestamp=timestamp,
    )
    return SignedAttestation(
        attestor_id=attestor_id,
        data=data,
        signature=signer.sign(data.signing_payload()),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def access():
    return AccessControl({
        "ops": [Capability.ORACLE_ADMIN],
        "oracle-bot": [Capability.MANUAL_ORACLE],
        "governance": [Capability.ADMIN],
    })


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def recorder(bus):
    return EventRecorder(bus)


@pytest.fixture
def signers():
    return {name: Signer.generate() for name in ("alice", "bob", "carol", "auditor")}

