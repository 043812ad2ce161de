"""Reserve and reconciliation data models"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional
import json

from ..units import from_fixed, RATIO_DECIMALS


def canonical_json(obj: Any) -> bytes:
    """Deterministic JSON encoding used for hashing and signing"""
    return json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")


def _root_hash(d: dict) -> str:
    value = d.get("reserveRootHash", "")
    if not isinstance(value, str):
        raise ValueError(f"reserveRootHash must be a string, got {type(value).__name__}")
    return value


@dataclass(frozen=True)
class AssetRecord:
    """
    One reserve holding.

    Amounts are 18-decimal fixed point. Records are ordered by `id` when a
    commitment tree is built, so the root only depends on content.
    """
    id: str
    name: str
    symbol: str
    amount: int
    value: int
    last_updated: int

    def canonical_bytes(self) -> bytes:
        return canonical_json({
            "id": self.id,
            "name": self.name,
            "symbol": self.symbol,
            "amount": str(self.amount),
            "value": str(self.value),
            "lastUpdated": self.last_updated,
        })

    def with_changes(self, **changes) -> "AssetRecord":
        return replace(self, **changes)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "symbol": self.symbol,
            "amount": str(self.amount),
            "value": str(self.value),
            "lastUpdated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "AssetRecord":
        return cls(
            id=str(d["id"]),
            name=d.get("name", ""),
            symbol=d.get("symbol", ""),
            amount=int(d["amount"]),
            value=int(d["value"]),
            last_updated=int(d.get("lastUpdated", d.get("last_updated", 0))),
        )


@dataclass(frozen=True)
class ReserveState:
    """Authoritative reserve snapshot"""
    total_supply: int
    total_reserves: int
    collateralization_ratio: int  # 6-decimal fixed point
    assets: List[AssetRecord]
    reserve_root_hash: str
    observed_at: int = 0

    @property
    def collateralization_ratio_decimal(self):
        return from_fixed(self.collateralization_ratio, RATIO_DECIMALS)

    def find_asset(self, asset_id: str) -> Optional[AssetRecord]:
        for asset in self.assets:
            if asset.id == asset_id:
                return asset
        return None

    def to_dict(self) -> dict:
        return {
            "totalSupply": str(self.total_supply),
            "totalReserves": str(self.total_reserves),
            "collateralizationRatio": str(self.collateralization_ratio),
            "assets": [a.to_dict() for a in self.assets],
            "reserveRootHash": self.reserve_root_hash,
            "observedAt": self.observed_at,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "ReserveState":
        return cls(
            total_supply=int(d["totalSupply"]),
            total_reserves=int(d["totalReserves"]),
            collateralization_ratio=int(d.get("collateralizationRatio", 0)),
            assets=[AssetRecord.from_dict(a) for a in d.get("assets", [])],
            reserve_root_hash=_root_hash(d),
            observed_at=int(d.get("observedAt", 0)),
        )


@dataclass(frozen=True)
class AttestationData:
    """Totals an independent auditor signed off on"""
    total_supply: int
    total_reserves: int
    collateralization_ratio: int
    reserve_root_hash: str
    timestamp: int

    def signing_payload(self) -> bytes:
        """Canonical bytes the auditor signs"""
        return canonical_json({
            "totalSupply": str(self.total_supply),
            "totalReserves": str(self.total_reserves),
            "collateralizationRatio": str(self.collateralization_ratio),
            "reserveRootHash": self.reserve_root_hash,
            "timestamp": self.timestamp,
        })

    def to_dict(self) -> dict:
        return json.loads(self.signing_payload())

    @classmethod
    def from_dict(cls, d: dict) -> "AttestationData":
        return cls(
            total_supply=int(d["totalSupply"]),
            total_reserves=int(d["totalReserves"]),
            collateralization_ratio=int(d.get("collateralizationRatio", 0)),
            reserve_root_hash=_root_hash(d),
            timestamp=int(d.get("timestamp", 0)),
        )


@dataclass(frozen=True)
class SignedAttestation:
    """Wire item of the attestation feed: {attestorId, data, signature}"""
    attestor_id: str
    data: AttestationData
    signature: str  # hex

    def to_dict(self) -> dict:
        return {
            "attestorId": self.attestor_id,
            "data": self.data.to_dict(),
            "signature": self.signature,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "SignedAttestation":
        if not isinstance(d["data"], dict):
            raise ValueError("attestation data must be an object")
        return cls(
            attestor_id=str(d["attestorId"]),
            data=AttestationData.from_dict(d["data"]),
            signature=str(d.get("signature", "")),
        )


@dataclass(frozen=True)
class AttestationCheck:
    """Outcome of verifying one attestation against authoritative state"""
    attestation: SignedAttestation
    signature_valid: bool
    data_valid: bool

    @property
    def passed(self) -> bool:
        return self.signature_valid and self.data_valid

    def to_dict(self) -> dict:
        return {
            **self.attestation.to_dict(),
            "signatureValid": self.signature_valid,
            "dataValid": self.data_valid,
        }


@dataclass(frozen=True)
class AuditCrossCheck:
    """Latest quorum-verified audit report compared to authoritative totals"""
    report_id: int
    declared_reserve: int
    declared_supply: int
    reserve_ratio: int
    consistent: bool

    def to_dict(self) -> dict:
        return {
            "reportId": self.report_id,
            "declaredReserve": str(self.declared_reserve),
            "declaredSupply": str(self.declared_supply),
            "reserveRatio": str(self.reserve_ratio),
            "consistent": self.consistent,
        }


@dataclass(frozen=True)
class ReconciliationSnapshot:
    """
    Combined view served by the reconciliation engine.

    Ephemeral and always re-derivable; never authoritative storage.
    """
    reserve: ReserveState
    attestations: List[AttestationCheck]
    verified: bool
    fetched_at: float
    audit: Optional[AuditCrossCheck] = None
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def valid_attestations(self) -> List[AttestationCheck]:
        return [a for a in self.attestations if a.passed]

    def to_dict(self) -> dict:
        return {
            **self.reserve.to_dict(),
            "attestations": [a.to_dict() for a in self.attestations],
            "verified": self.verified,
            "fetchedAt": self.fetched_at,
            "audit": self.audit.to_dict() if self.audit else None,
            "errors": dict(self.errors),
        }
