"""Off-process reconciliation of reserves against signed attestations"""

from .reserves import ReserveSource, ReserveLedger, HttpReserveSource, Holding
from .attestations import AttestationFeed
from .engine import ReconciliationEngine, Subscription, DEFAULT_TOLERANCE

__all__ = [
    "ReserveSource",
    "ReserveLedger",
    "HttpReserveSource",
    "Holding",
    "AttestationFeed",
    "ReconciliationEngine",
    "Subscription",
    "DEFAULT_TOLERANCE",
]
