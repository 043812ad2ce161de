"""Audit report data models"""

from dataclasses import dataclass
from typing import Tuple

from ..units import ratio, from_fixed, RATIO_DECIMALS


@dataclass(frozen=True)
class AuditReport:
    """
    Reserve audit report submitted by a trusted attestor.

    Reports are replaced (never mutated in place) when their attestation
    count grows; once `verified` is True the report is final.

    Attributes:
        id: Sequential report identifier (starts at 1)
        submitted_at: Unix time of submission
        document_ref: Reference to the off-chain audit document (URI, CID)
        content_hash: Hex digest of the audit document contents
        declared_reserve: Declared reserve value, 18-decimal fixed point
        declared_supply: Declared token supply, 18-decimal fixed point
        submitter: Attestor that submitted the report
        attestation_count: Distinct attestations recorded so far
        verified: True once attestation_count reached quorum
    """
    id: int
    submitted_at: int
    document_ref: str
    content_hash: str
    declared_reserve: int
    declared_supply: int
    submitter: str
    attestation_count: int = 0
    verified: bool = False

    @property
    def reserve_ratio(self) -> int:
        """declared_reserve / declared_supply, 6-decimal fixed point"""
        return ratio(self.declared_reserve, self.declared_supply)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "submitted_at": self.submitted_at,
            "document_ref": self.document_ref,
            "content_hash": self.content_hash,
            "declared_reserve": str(self.declared_reserve),
            "declared_supply": str(self.declared_supply),
            "submitter": self.submitter,
            "attestation_count": self.attestation_count,
            "verified": self.verified,
        }


@dataclass(frozen=True)
class VerifiedReport:
    """Latest verified report plus its read-time reserve ratio"""
    report: AuditReport
    reserve_ratio: int
    attestors: Tuple[str, ...] = ()

    @property
    def reserve_ratio_decimal(self):
        return from_fixed(self.reserve_ratio, RATIO_DECIMALS)

    def to_dict(self) -> dict:
        return {
            **self.report.to_dict(),
            "reserve_ratio": str(self.reserve_ratio_decimal),
            "attestors": list(self.attestors),
        }
