"""Data models for the reserve oracle"""

from .feed import PriceFeed, SourceKind
from .report import AuditReport, VerifiedReport
from .reserve import (
    AssetRecord,
    ReserveState,
    AttestationData,
    SignedAttestation,
    AttestationCheck,
    AuditCrossCheck,
    ReconciliationSnapshot,
    canonical_json,
)

__all__ = [
    "PriceFeed",
    "SourceKind",
    "AuditReport",
    "VerifiedReport",
    "AssetRecord",
    "ReserveState",
    "AttestationData",
    "SignedAttestation",
    "AttestationCheck",
    "AuditCrossCheck",
    "ReconciliationSnapshot",
    "canonical_json",
]
