"""
Reserve Oracle - trust verification for a collateral-backed stablecoin

Turns untrusted external signals into verified facts:
- Price aggregation with fallback and deviation protection
- Quorum attestation of reserve audit reports
- Off-process reconciliation of reserves against signed attestations,
  with Merkle inclusion proofs per reserve asset
"""

__version__ = "1.0.0"

from .access import AccessControl, Capability
from .aggregator import PriceFeedAggregator
from .attestation import AttestationQuorum, report_message
from .crypto import MerkleCommitment, MerkleProof, SignatureVerifier, Signer
from .errors import (
    ReserveOracleError,
    ValidationError,
    NotFoundError,
    AuthorizationError,
    StaleDataError,
    DeviationError,
    SignatureError,
    SourceUnavailableError,
    NetworkError,
)
from .events import EventBus, EventRecorder
from .models import PriceFeed, SourceKind, AuditReport, ReconciliationSnapshot
from .reconciliation import ReconciliationEngine, ReserveLedger, AttestationFeed

__all__ = [
    # Core
    "PriceFeedAggregator",
    "AttestationQuorum",
    "ReconciliationEngine",
    "report_message",
    # Reserves
    "ReserveLedger",
    "AttestationFeed",
    # Crypto
    "MerkleCommitment",
    "MerkleProof",
    "SignatureVerifier",
    "Signer",
    # Access and events
    "AccessControl",
    "Capability",
    "EventBus",
    "EventRecorder",
    # Models
    "PriceFeed",
    "SourceKind",
    "AuditReport",
    "ReconciliationSnapshot",
    # Errors
    "ReserveOracleError",
    "ValidationError",
    "NotFoundError",
    "AuthorizationError",
    "StaleDataError",
    "DeviationError",
    "SignatureError",
    "SourceUnavailableError",
    "NetworkError",
]
