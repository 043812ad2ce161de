"""Price feed data model"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..units import from_fixed


class SourceKind(Enum):
    """Kinds of upstream price source"""
    DIRECT_FEED = "direct_feed"
    MANUAL_SUBMISSION = "manual_submission"
    TIME_WEIGHTED_AVERAGE = "time_weighted_average"


@dataclass
class PriceFeed:
    """
    Per-asset feed configuration and last accepted price.

    Attributes:
        asset: Opaque reserve-asset identifier
        symbol: Display symbol (e.g. "PAXG/USD")
        primary_source: Descriptor resolved by the primary adapter
        fallback_source: Descriptor for the fallback adapter (optional)
        source_kind: Adapter kind for the primary source
        fallback_kind: Adapter kind for the fallback source
        heartbeat: Max seconds between accepted updates before data is stale
        deviation_threshold_bps: Soft threshold; jumps above it raise an alert
        last_price: Last accepted price, 18-decimal fixed point (0 = never set)
        last_update: Unix time of the last accepted price
        active: Inactive feeds reject all reads and writes
    """
    asset: str
    symbol: str
    primary_source: str
    source_kind: SourceKind
    heartbeat: int
    deviation_threshold_bps: int
    fallback_source: Optional[str] = None
    fallback_kind: Optional[SourceKind] = None
    last_price: int = 0
    last_update: int = 0
    active: bool = True

    @property
    def has_price(self) -> bool:
        return self.last_price > 0

    @property
    def has_fallback(self) -> bool:
        return bool(self.fallback_source) and self.fallback_kind is not None

    def is_stale_at(self, now: float) -> bool:
        """True if no price was ever set or the heartbeat has elapsed"""
        if not self.has_price:
            return True
        return now > self.last_update + self.heartbeat

    def to_dict(self) -> dict:
        return {
            "asset": self.asset,
            "symbol": self.symbol,
            "primary_source": self.primary_source,
            "fallback_source": self.fallback_source,
            "source_kind": self.source_kind.value,
            "fallback_kind": self.fallback_kind.value if self.fallback_kind else None,
            "heartbeat": self.heartbeat,
            "deviation_threshold_bps": self.deviation_threshold_bps,
            "last_price": str(self.last_price),
            "last_price_decimal": str(from_fixed(self.last_price)),
            "last_update": self.last_update,
            "active": self.active,
        }
