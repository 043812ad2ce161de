"""Tests for reserve reconciliation"""

import asyncio

import pytest

from reserve_oracle.aggregator import PriceFeedAggregator
from reserve_oracle.attestation.quorum import AttestationQuorum, report_message
from reserve_oracle.crypto.merkle import MerkleCommitment, hash_asset
from reserve_oracle.errors import NetworkError, NotFoundError, StaleDataError
from reserve_oracle.events import ReserveUpdated
from reserve_oracle.feeds.sources import ManualSubmissionSource
from reserve_oracle.models.feed import SourceKind
from reserve_oracle.models.reserve import AssetRecord, AttestationData, ReserveState, SignedAttestation
from reserve_oracle.reconciliation.attestations import AttestationFeed
from reserve_oracle.reconciliation.engine import ReconciliationEngine
from reserve_oracle.reconciliation.reserves import ReserveLedger
from reserve_oracle.units import PRECISION, ratio

from conftest import FakeAttestationFeed, FakeReserveSource, sign_attestation

SUPPLY = 1_000_000 * PRECISION


def make_state(values=(400_000, 350_000, 300_000), supply=SUPPLY, observed_at=0) -> ReserveState:
    assets = [
        AssetRecord(
            id=f"vault-{i}",
            name=f"Vault {i}",
            symbol="PAXG",
            amount=v * PRECISION // 2000,
            value=v * PRECISION,
            last_updated=1_700_000_000,
        )
        for i, v in enumerate(values, start=1)
    ]
    commitment = MerkleCommitment(assets)
    total = sum(a.value for a in assets)
    return ReserveState(
        total_supply=supply,
        total_reserves=total,
        collateralization_ratio=ratio(total, supply),
        assets=commitment.assets,
        reserve_root_hash=commitment.root,
        observed_at=observed_at,
    )


async def wait_until(predicate, timeout=1.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.001)
    await asyncio.wait_for(poll(), timeout)


def malformed_attestation(attestor_id="mallory", **fields) -> SignedAttestation:
    """Attestation whose data fields carry the wrong types"""
    values = dict(total_supply=1, total_reserves=1, collateralization_ratio=0,
                  reserve_root_hash=None, timestamp=0)
    values.update(fields)
    return SignedAttestation(attestor_id=attestor_id, data=AttestationData(**values), signature="00")


@pytest.fixture
def state():
    return make_state()


@pytest.fixture
def reserve_source(state):
    return FakeReserveSource(state)


@pytest.fixture
def attestation_feed(state, signers):
    return FakeAttestationFeed([sign_attestation(signers["auditor"], "auditor-1", state)])


@pytest.fixture
def engine(reserve_source, attestation_feed, signers, clock):
    return ReconciliationEngine(
        reserve_source,
        attestation_feed,
        trusted_keys={"auditor-1": signers["auditor"].public_key},
        cache_ttl=3600,
        clock=clock,
    )


class TestVerification:
    @pytest.mark.asyncio
    async def test_valid_attestation_verifies(self, engine, state):
        snapshot = await engine.refresh()

        assert snapshot.verified
        assert snapshot.reserve == state
        assert len(snapshot.valid_attestations) == 1
        assert snapshot.attestations[0].signature_valid
        assert snapshot.attestations[0].data_valid

    @pytest.mark.asyncio
    async def test_untrusted_attestor(self, engine, attestation_feed, signers, state):
        attestation_feed.attestations = [sign_attestation(signers["alice"], "mallory", state)]
        snapshot = await engine.refresh()
        assert not snapshot.verified
        assert not snapshot.attestations[0].signature_valid
        assert snapshot.attestations[0].data_valid

    @pytest.mark.asyncio
    async def test_signed_by_wrong_key(self, engine, attestation_feed, signers, state):
        attestation_feed.attestations = [sign_attestation(signers["alice"], "auditor-1", state)]
        snapshot = await engine.refresh()
        assert not snapshot.verified

    @pytest.mark.asyncio
    async def test_no_attestations(self, engine, attestation_feed):
        attestation_feed.attestations = []
        snapshot = await engine.refresh()
        assert not snapshot.verified
        assert snapshot.attestations == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("delta,verified", [(10**15, True), (10**15 + 1, False)])
    async def test_tolerance_boundary(self, engine, attestation_feed, signers, state, delta, verified):
        attestation_feed.attestations = [
            sign_attestation(signers["auditor"], "auditor-1", state,
                             total_reserves=state.total_reserves + delta),
        ]
        snapshot = await engine.refresh()
        assert snapshot.verified is verified

    @pytest.mark.asyncio
    async def test_root_mismatch(self, engine, attestation_feed, signers, state):
        attestation_feed.attestations = [
            sign_attestation(signers["auditor"], "auditor-1", state, reserve_root_hash="ab" * 32),
        ]
        assert not (await engine.refresh()).verified

        engine.require_root_match = False
        assert (await engine.refresh()).verified

    @pytest.mark.asyncio
    async def test_one_good_attestation_is_enough(self, engine, attestation_feed, signers, state):
        attestation_feed.attestations.insert(
            0, sign_attestation(signers["alice"], "auditor-1", state),
        )
        snapshot = await engine.refresh()
        assert snapshot.verified
        assert [c.passed for c in snapshot.attestations] == [False, True]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("attestor_id,fields", [
        ("mallory", {"reserve_root_hash": None}),
        ("mallory", {"reserve_root_hash": 12345}),
        ("auditor-1", {"reserve_root_hash": None}),
        ("auditor-1", {"reserve_root_hash": "", "total_supply": "1"}),
    ])
    async def test_malformed_attestation_fails_closed(self, engine, attestation_feed, attestor_id, fields):
        attestation_feed.attestations.append(malformed_attestation(attestor_id, **fields))

        snapshot = await engine.refresh()

        assert snapshot.verified
        good, bad = snapshot.attestations
        assert good.passed
        assert not bad.data_valid
        assert not bad.passed
        assert engine.cached is snapshot

    def test_verify_attestation_direct(self, engine, signers, state):
        good = sign_attestation(signers["auditor"], "auditor-1", state)
        assert engine.verify_attestation(good)
        forged = SignedAttestation(attestor_id="auditor-1", data=good.data, signature="00" * 64)
        assert not engine.verify_attestation(forged)


class TestCache:
    @pytest.mark.asyncio
    async def test_cached_within_ttl(self, engine, reserve_source, clock):
        first = await engine.get()
        clock.advance(3000)
        second = await engine.get()
        assert first is second
        assert reserve_source.calls == 1

    @pytest.mark.asyncio
    async def test_refetch_after_ttl(self, engine, reserve_source, clock):
        await engine.get()
        clock.advance(3601)
        await engine.get()
        assert reserve_source.calls == 2

    @pytest.mark.asyncio
    async def test_force_refresh(self, engine, reserve_source):
        await engine.get()
        await engine.get(force_refresh=True)
        assert reserve_source.calls == 2

    @pytest.mark.asyncio
    async def test_failure_keeps_previous_snapshot(self, engine, reserve_source, clock):
        good = await engine.get()
        reserve_source.fail = True
        clock.advance(3601)

        with pytest.raises(NetworkError):
            await engine.get()

        assert engine.cached is good
        assert engine.get_status()["last_error"] is not None

    @pytest.mark.asyncio
    async def test_unexpected_error_wrapped(self, engine, reserve_source, clock):
        good = await engine.get()
        reserve_source.error = RuntimeError("boom")
        clock.advance(3601)

        with pytest.raises(NetworkError) as exc_info:
            await engine.get()

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert engine.cached is good
        assert engine.get_status()["last_error"] == "boom"

        # the failed task does not block the next refresh
        reserve_source.error = None
        assert (await engine.refresh()).verified

    @pytest.mark.asyncio
    async def test_attestation_feed_failure(self, engine, attestation_feed):
        attestation_feed.fail = True
        with pytest.raises(NetworkError):
            await engine.refresh()
        assert engine.cached is None

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_coalesce(self, state, attestation_feed, signers, clock):
        source = FakeReserveSource(state, delay=0.01)
        engine = ReconciliationEngine(
            source, attestation_feed,
            trusted_keys={"auditor-1": signers["auditor"].public_key}, clock=clock,
        )

        results = await asyncio.gather(*(engine.refresh() for _ in range(5)))

        assert source.calls == 1
        assert attestation_feed.calls == 1
        assert all(r is results[0] for r in results)


class TestProofs:
    @pytest.mark.asyncio
    async def test_build_and_verify(self, engine, state):
        proof = await engine.build_proof("vault-2")
        assert proof.root == state.reserve_root_hash
        assert proof.leaf == hash_asset(state.find_asset("vault-2"))
        assert engine.verify_proof(state.reserve_root_hash, proof.leaf, proof.path)

    @pytest.mark.asyncio
    async def test_unknown_asset(self, engine):
        with pytest.raises(NotFoundError):
            await engine.build_proof("vault-99")

    @pytest.mark.asyncio
    async def test_proof_rejected_after_reserve_change(self, engine, reserve_source, clock):
        proof = await engine.build_proof("vault-1")
        reserve_source.state = make_state(values=(400_000, 350_001, 300_000))
        snapshot = await engine.refresh()
        assert not engine.verify_proof(snapshot.reserve.reserve_root_hash, proof.leaf, proof.path)


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_update_triggers_callback(self, engine, reserve_source):
        received = []
        engine.subscribe(lambda snapshot, error: received.append((snapshot, error)))

        new_state = make_state(values=(500_000, 350_000, 300_000))
        reserve_source.update(new_state)
        await wait_until(lambda: received)

        snapshot, error = received[0]
        assert error is None
        assert snapshot.reserve == new_state
        # attestation was signed over the old totals
        assert not snapshot.verified

    @pytest.mark.asyncio
    async def test_async_callback(self, engine, reserve_source, state):
        received = []

        async def on_update(snapshot, error):
            received.append(snapshot)

        engine.subscribe(on_update)
        reserve_source.update(state)
        await wait_until(lambda: received)
        assert received[0].verified

    @pytest.mark.asyncio
    async def test_failure_reported_to_callback(self, engine, reserve_source):
        received = []
        engine.subscribe(lambda snapshot, error: received.append((snapshot, error)))
        reserve_source.fail = True

        reserve_source.update(reserve_source.state)
        await wait_until(lambda: received)

        snapshot, error = received[0]
        assert snapshot is None
        assert isinstance(error, NetworkError)

    @pytest.mark.asyncio
    async def test_unexpected_failure_reported_to_callback(self, engine, reserve_source):
        received = []
        engine.subscribe(lambda snapshot, error: received.append((snapshot, error)))
        reserve_source.error = RuntimeError("boom")

        reserve_source.update(reserve_source.state)
        await wait_until(lambda: received)

        snapshot, error = received[0]
        assert snapshot is None
        assert isinstance(error, NetworkError)
        assert isinstance(error.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_malformed_attestation_still_delivered(self, engine, reserve_source, attestation_feed, state):
        received = []
        engine.subscribe(lambda snapshot, error: received.append((snapshot, error)))
        attestation_feed.attestations.append(malformed_attestation())

        reserve_source.update(state)
        await wait_until(lambda: received)

        snapshot, error = received[0]
        assert error is None
        assert snapshot.verified
        assert [c.passed for c in snapshot.attestations] == [True, False]

    @pytest.mark.asyncio
    async def test_no_callback_after_unsubscribe(self, engine, reserve_source):
        received = []
        sub = engine.subscribe(lambda snapshot, error: received.append(snapshot))

        reserve_source.update(reserve_source.state)
        sub.unsubscribe()
        reserve_source.update(reserve_source.state)
        await asyncio.sleep(0.05)

        assert received == []
        assert engine.get_status()["subscriptions"] == 0

    @pytest.mark.asyncio
    async def test_unsubscribe_cancels_in_flight_delivery(self, state, attestation_feed, signers, clock):
        source = FakeReserveSource(state, delay=0.02)
        engine = ReconciliationEngine(
            source, attestation_feed,
            trusted_keys={"auditor-1": signers["auditor"].public_key}, clock=clock,
        )
        received = []
        sub = engine.subscribe(lambda snapshot, error: received.append(snapshot))

        source.update(state)
        await wait_until(lambda: source.calls == 1)
        sub.unsubscribe()
        await asyncio.sleep(0.05)

        assert received == []
        # the shared refresh still completed and populated the cache
        assert engine.cached is not None


class TestRatioAndHistory:
    @pytest.mark.asyncio
    async def test_verify_reserve_ratio(self, engine):
        result = await engine.verify_reserve_ratio()
        assert result["is_valid"] is True
        assert result["current_ratio"] == "1.05"
        assert result["required_ratio"] == "1"
        assert result["attestations_valid"] is True

    @pytest.mark.asyncio
    async def test_under_collateralized(self, engine):
        engine.required_ratio = 1_100_000
        result = await engine.verify_reserve_ratio()
        assert result["is_valid"] is False

    @pytest.mark.asyncio
    async def test_history(self, engine, attestation_feed):
        attestation_feed.history = [{"totalSupply": "1", "totalReserves": "2", "collateralizationRatio": "3"}]
        assert await engine.get_historical(7) == attestation_feed.history

        attestation_feed.fail = True
        with pytest.raises(NetworkError):
            await engine.get_historical(7)


class TestAuditCrossCheck:
    @pytest.mark.asyncio
    async def test_latest_verified_report_compared(self, engine, access, signers, clock, state):
        quorum = AttestationQuorum(access, quorum=1, clock=clock)
        quorum.add_attestor("governance", "alice", signers["alice"].public_key)
        now = int(clock())
        message = report_message("doc", "hash", state.total_reserves, state.total_supply, now)
        quorum.submit_report("alice", "doc", "hash", state.total_reserves, state.total_supply,
                             signers["alice"].sign(message), submitted_at=now)
        engine.quorum = quorum

        snapshot = await engine.refresh()

        assert snapshot.audit.report_id == 1
        assert snapshot.audit.consistent
        assert snapshot.audit.reserve_ratio == 1_050_000

    @pytest.mark.asyncio
    async def test_no_verified_report(self, engine, access, clock):
        engine.quorum = AttestationQuorum(access, quorum=2, clock=clock)
        snapshot = await engine.refresh()
        assert snapshot.audit is None


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_stop(self, engine, attestation_feed):
        snapshot = await engine.start()
        assert snapshot.verified
        assert engine.get_status()["running"]

        await engine.close()
        assert not engine.get_status()["running"]
        assert attestation_feed.closed


class TestReserveLedger:
    @pytest.fixture
    def aggregator(self, access, bus, clock):
        aggregator = PriceFeedAggregator(
            access, adapters=[ManualSubmissionSource()], events=bus, clock=clock,
        )
        aggregator.register_feed(
            "ops", "paxg", "PAXG/USD", "PAXG/USD", SourceKind.MANUAL_SUBMISSION, 3600, 500,
        )
        aggregator.submit_manual_price("oracle-bot", "paxg", 2000 * PRECISION)
        return aggregator

    @pytest.fixture
    def ledger(self, aggregator, bus, clock):
        ledger = ReserveLedger(aggregator, events=bus, clock=clock)
        ledger.set_total_supply(400_000 * PRECISION)
        ledger.set_holding("vault-a", "Gold vault A", "PAXG", 100 * PRECISION, "paxg")
        ledger.set_holding("vault-b", "Gold vault B", "PAXG", 110 * PRECISION, "paxg")
        return ledger

    def test_values_holdings(self, ledger):
        state = ledger.state()
        assert state.total_reserves == 420_000 * PRECISION
        assert state.collateralization_ratio == 1_050_000
        assert [a.id for a in state.assets] == ["vault-a", "vault-b"]
        assert state.reserve_root_hash == MerkleCommitment(state.assets).root

    def test_mutation_emits_reserve_updated(self, ledger, recorder):
        recorder.clear()
        ledger.set_holding("vault-c", "Gold vault C", "PAXG", PRECISION, "paxg")
        updates = recorder.of_type(ReserveUpdated)
        assert len(updates) == 1
        assert updates[0].reserve_root_hash == ledger.state().reserve_root_hash

    def test_price_update_notifies_listeners(self, ledger, aggregator):
        calls = []
        ledger.add_listener(lambda: calls.append(1))
        aggregator.submit_manual_price("oracle-bot", "paxg", 2010 * PRECISION)
        assert calls == [1]
        assert ledger.state().total_reserves == 210 * 2010 * PRECISION

    def test_unpriced_holding_rejected(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.set_holding("vault-x", "X", "XAU", PRECISION, "xau")

    def test_stale_price_blocks_valuation(self, ledger, clock):
        clock.advance(3601)
        with pytest.raises(StaleDataError):
            ledger.state()

    @pytest.mark.asyncio
    async def test_engine_over_ledger(self, ledger, signers, clock):
        state = ledger.state()
        feed = FakeAttestationFeed([sign_attestation(signers["auditor"], "auditor-1", state)])
        engine = ReconciliationEngine(
            ledger, feed, trusted_keys={"auditor-1": signers["auditor"].public_key}, clock=clock,
        )

        snapshot = await engine.refresh()
        assert snapshot.verified

        clock.advance(3601)
        with pytest.raises(NetworkError):
            await engine.refresh()
        assert engine.cached is snapshot


class TestAttestationFeed:
    @pytest.mark.asyncio
    async def test_parses_and_drops_malformed(self, signers, state):
        good = sign_attestation(signers["auditor"], "auditor-1", state)
        feed = AttestationFeed("https://attest.example/api/attestations", max_retries=1)

        async def fake_get_json(url, params=None):
            return [good.to_dict(), {"attestorId": "x"}]

        feed._get_json = fake_get_json
        attestations = await feed.fetch_attestations()

        assert attestations == [good]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("patch", [
        {"reserveRootHash": None},
        {"reserveRootHash": 12345},
        {"reserveRootHash": ["ab"]},
    ])
    async def test_drops_wrongly_typed_root_hash(self, signers, state, patch):
        good = sign_attestation(signers["auditor"], "auditor-1", state)
        bad = good.to_dict()
        bad["data"].update(patch)
        feed = AttestationFeed("https://attest.example/api/attestations", max_retries=1)

        async def fake_get_json(url, params=None):
            return [bad, good.to_dict()]

        feed._get_json = fake_get_json
        assert await feed.fetch_attestations() == [good]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("data", [None, "totals", ["1", "1"], 7])
    async def test_drops_non_object_data(self, signers, state, data):
        good = sign_attestation(signers["auditor"], "auditor-1", state)
        feed = AttestationFeed("https://attest.example/api/attestations", max_retries=1)

        async def fake_get_json(url, params=None):
            return [{"attestorId": "mallory", "data": data, "signature": "00"}, good.to_dict()]

        feed._get_json = fake_get_json
        assert await feed.fetch_attestations() == [good]

    def test_root_hash_type_checked_on_parse(self):
        with pytest.raises(ValueError, match="reserveRootHash"):
            SignedAttestation.from_dict({
                "attestorId": "mallory",
                "data": {"totalSupply": "1", "totalReserves": "1", "reserveRootHash": None},
                "signature": "00",
            })
        with pytest.raises(ValueError, match="reserveRootHash"):
            ReserveState.from_dict({"totalSupply": "1", "totalReserves": "1", "reserveRootHash": 5})

    @pytest.mark.asyncio
    async def test_history_window_and_units(self, clock):
        feed = AttestationFeed("https://attest.example/api/attestations/", max_retries=1, clock=clock)
        calls = []

        async def fake_get_json(url, params=None):
            calls.append((url, params))
            return [{"totalSupply": str(2 * PRECISION), "totalReserves": str(3 * PRECISION),
                     "collateralizationRatio": "1500000", "timestamp": 1}]

        feed._get_json = fake_get_json
        history = await feed.get_history(days=30)

        url, params = calls[0]
        assert url == "https://attest.example/api/attestations/history"
        assert set(params) == {"startDate", "endDate"}
        assert str(history[0]["collateralizationRatio"]) == "1.5"
        assert history[0]["totalSupply"] == 2
