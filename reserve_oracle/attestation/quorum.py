"""
Attestation Quorum

Trusted-attestor registry plus an append-only log of reserve audit reports.
A report becomes verified the first time its number of distinct
attestations reaches the quorum; verification is final.

Attestors are bound one-to-one to Ed25519 signer keys. A report is only
accepted if its canonical message is signed by the submitter's bound key.
"""

import threading
import time
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Set, Tuple, Union
import logging

from ..access import AccessControl, Capability
from ..crypto.signatures import SignatureVerifier, normalize_public_key
from ..errors import NotFoundError, SignatureError, ValidationError
from ..events import Event, EventBus, ReportAttested, ReportSubmitted, ReportVerified
from ..models.reserve import canonical_json
from ..models.report import AuditReport, VerifiedReport

logger = logging.getLogger(__name__)


def report_message(
    document_ref: str,
    content_hash: str,
    declared_reserve: int,
    declared_supply: int,
    submitted_at: int,
) -> bytes:
    """Canonical bytes an attestor signs when submitting a report"""
    return canonical_json([
        document_ref,
        content_hash,
        str(declared_reserve),
        str(declared_supply),
        int(submitted_at),
    ])


class AttestationQuorum:
    """
    Quorum-based verification of reserve audit reports.

    Usage:
        quorum = AttestationQuorum(access, quorum=2)
        quorum.add_attestor("admin", "auditor-a", signer_a.public_key)
        message = report_message(doc, digest, reserve, supply, now)
        report = quorum.submit_report("auditor-a", doc, digest, reserve, supply,
                                      signer_a.sign(message), submitted_at=now)
        quorum.attest_report("auditor-b", report.id)
        quorum.get_latest_verified()
    """

    def __init__(
        self,
        access: AccessControl,
        quorum: int = 1,
        events: Optional[EventBus] = None,
        clock: Callable[[], float] = time.time,
        max_clock_skew: int = 300,
    ):
        if quorum <= 0:
            raise ValidationError("quorum must be at least 1")

        self.access = access
        self.events = events or EventBus()
        self.max_clock_skew = max_clock_skew
        self._clock = clock
        self._quorum = quorum

        self._signer_of: Dict[str, str] = {}
        self._attestor_of: Dict[str, str] = {}
        self._reports: List[AuditReport] = []
        self._attestations: Dict[int, Set[str]] = {}
        self._lock = threading.RLock()

    @property
    def quorum(self) -> int:
        return self._quorum

    # ============ Registry ============

    def add_attestor(self, caller: str, attestor: str, signer_key: Union[str, bytes]):
        self.access.require(caller, Capability.ADMIN)

        with self._lock:
            if not attestor:
                raise ValidationError("attestor identity is required")
            key = normalize_public_key(signer_key)
            if attestor in self._signer_of:
                raise ValidationError(f"attestor {attestor} already registered")
            if key in self._attestor_of:
                raise ValidationError("signer key already bound to another attestor")

            self._signer_of[attestor] = key
            self._attestor_of[key] = attestor
            self.access.grant(attestor, Capability.ATTESTOR)

        logger.info(f"Attestor added: {attestor} ({key[:16]}...)")

    def remove_attestor(self, caller: str, attestor: str):
        """
        Unbind an attestor and revoke its capability.

        Attestations it already recorded keep counting toward their reports.
        """
        self.access.require(caller, Capability.ADMIN)

        with self._lock:
            key = self._signer_of.get(attestor)
            if key is None:
                raise NotFoundError(f"unknown attestor: {attestor}")
            del self._signer_of[attestor]
            del self._attestor_of[key]
            self.access.revoke(attestor, Capability.ATTESTOR)

        logger.info(f"Attestor removed: {attestor}")

    def rebind_signer_key(self, caller: str, attestor: str, new_key: Union[str, bytes]):
        self.access.require(caller, Capability.ADMIN)

        with self._lock:
            old_key = self._signer_of.get(attestor)
            if old_key is None:
                raise NotFoundError(f"unknown attestor: {attestor}")
            key = normalize_public_key(new_key)
            if key == old_key:
                return
            if key in self._attestor_of:
                raise ValidationError("signer key already bound to another attestor")

            del self._attestor_of[old_key]
            self._signer_of[attestor] = key
            self._attestor_of[key] = attestor

        logger.info(f"Signer key rebound for {attestor}")

    def set_quorum(self, caller: str, n: int):
        self.access.require(caller, Capability.ADMIN)
        if n <= 0:
            raise ValidationError("quorum must be at least 1")
        with self._lock:
            self._quorum = int(n)
        logger.info(f"Quorum set to {n}")

    def attestors(self) -> List[str]:
        return list(self._signer_of)

    def signer_key(self, attestor: str) -> Optional[str]:
        return self._signer_of.get(attestor)

    def attestor_for_key(self, key: Union[str, bytes]) -> Optional[str]:
        return self._attestor_of.get(normalize_public_key(key))

    # ============ Reports ============

    def submit_report(
        self,
        caller: str,
        document_ref: str,
        content_hash: str,
        declared_reserve: int,
        declared_supply: int,
        signature: Union[str, bytes],
        submitted_at: Optional[int] = None,
    ) -> AuditReport:
        """
        Record a new audit report, attested by its submitter.

        `submitted_at` is the time the submitter signed over; it must lie
        within `max_clock_skew` of the current time and defaults to now.

        Raises:
            AuthorizationError: caller is not an attestor
            ValidationError: empty reference/hash, zero supply, bad timestamp
            SignatureError: signature is not from the caller's bound key
        """
        self.access.require(caller, Capability.ATTESTOR)

        events: List[Event] = []
        with self._lock:
            now = int(self._clock())
            if submitted_at is None:
                submitted_at = now
            if abs(now - int(submitted_at)) > self.max_clock_skew:
                raise ValidationError("submission time outside accepted window")
            if not document_ref or not content_hash:
                raise ValidationError("document reference and content hash are required")
            if declared_supply <= 0 or declared_reserve < 0:
                raise ValidationError("declared supply must be positive and reserve non-negative")

            key = self._signer_of.get(caller)
            if key is None:
                raise SignatureError(f"{caller} has no bound signer key")
            message = report_message(
                document_ref, content_hash, declared_reserve, declared_supply, submitted_at
            )
            SignatureVerifier.require(key, message, signature)

            report = AuditReport(
                id=len(self._reports) + 1,
                submitted_at=int(submitted_at),
                document_ref=document_ref,
                content_hash=content_hash,
                declared_reserve=int(declared_reserve),
                declared_supply=int(declared_supply),
                submitter=caller,
                attestation_count=1,
                verified=self._quorum <= 1,
            )
            self._reports.append(report)
            self._attestations[report.id] = {caller}

            events.append(ReportSubmitted(
                report_id=report.id,
                submitter=caller,
                document_ref=document_ref,
                content_hash=content_hash,
            ))
            events.append(ReportAttested(report_id=report.id, attestor=caller, attestation_count=1))
            if report.verified:
                events.append(ReportVerified(report_id=report.id, attestation_count=1))

        logger.info(
            f"Report {report.id} submitted by {caller} "
            f"(1/{self._quorum}{', verified' if report.verified else ''})"
        )
        self.events.emit_all(events)
        return report

    def attest_report(self, caller: str, report_id: int) -> AuditReport:
        """
        Add the caller's attestation to a pending report.

        Raises:
            NotFoundError: unknown report
            ValidationError: report already verified, or caller already attested
        """
        self.access.require(caller, Capability.ATTESTOR)

        events: List[Event] = []
        with self._lock:
            report = self._require_report(report_id)
            if report.verified:
                raise ValidationError(f"report {report_id} already verified")
            attested = self._attestations[report_id]
            if caller in attested:
                raise ValidationError(f"{caller} already attested report {report_id}")

            count = report.attestation_count + 1
            verified = count >= self._quorum
            updated = replace(report, attestation_count=count, verified=verified)
            attested.add(caller)
            self._reports[report_id - 1] = updated

            events.append(ReportAttested(report_id=report_id, attestor=caller, attestation_count=count))
            if verified:
                events.append(ReportVerified(report_id=report_id, attestation_count=count))

        logger.info(
            f"Report {report_id} attested by {caller} "
            f"({count}/{self._quorum}{', verified' if verified else ''})"
        )
        self.events.emit_all(events)
        return updated

    def get_latest_verified(self) -> VerifiedReport:
        """Newest verified report with its reserve ratio computed on read"""
        for report in reversed(self._reports):
            if report.verified:
                return VerifiedReport(
                    report=report,
                    reserve_ratio=report.reserve_ratio,
                    attestors=tuple(sorted(self._attestations[report.id])),
                )
        raise NotFoundError("no verified report")

    def get_report(self, report_id: int) -> AuditReport:
        return self._require_report(report_id)

    def has_attested(self, report_id: int, attestor: str) -> bool:
        return attestor in self._attestations.get(report_id, ())

    def attestations_for(self, report_id: int) -> Tuple[str, ...]:
        self._require_report(report_id)
        return tuple(sorted(self._attestations[report_id]))

    @property
    def report_count(self) -> int:
        return len(self._reports)

    def _require_report(self, report_id: int) -> AuditReport:
        if not 1 <= report_id <= len(self._reports):
            raise NotFoundError(f"unknown report: {report_id}")
        return self._reports[report_id - 1]
