"""
Merkle commitment over reserve asset records.

Commitment rules:
1. Leaf hashing: sha256(canonical record bytes)
2. Parent hashing: sha256(left + right)
3. Padding: an odd trailing node at any level is paired with itself
4. Empty tree: 32 zero bytes
5. Single leaf: root = leaf

All hashes are lowercase hex strings.
"""

import hashlib
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence

from ..errors import NotFoundError, ValidationError
from ..models.reserve import AssetRecord

EMPTY_TREE_ROOT = "00" * 32

LEFT = "left"
RIGHT = "right"


def hash_leaf(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def hash_pair(left: str, right: str) -> str:
    return hashlib.sha256(bytes.fromhex(left) + bytes.fromhex(right)).hexdigest()


def hash_asset(asset: AssetRecord) -> str:
    return hash_leaf(asset.canonical_bytes())


def build_levels(leaves: Sequence[str]) -> List[List[str]]:
    """Build all tree levels bottom-up; levels[0] are the leaves"""
    if not leaves:
        return [[EMPTY_TREE_ROOT]]

    levels = [list(leaves)]
    while len(levels[-1]) > 1:
        current = levels[-1]
        parents = []
        for i in range(0, len(current), 2):
            left = current[i]
            right = current[i + 1] if i + 1 < len(current) else left
            parents.append(hash_pair(left, right))
        levels.append(parents)
    return levels


def merkle_root(leaves: Sequence[str]) -> str:
    return build_levels(leaves)[-1][0]


@dataclass(frozen=True)
class ProofStep:
    """One authentication path entry: sibling hash and which side it sits on"""
    sibling: str
    position: str  # LEFT or RIGHT

    def to_dict(self) -> dict:
        return {"data": self.sibling, "position": self.position}


@dataclass(frozen=True)
class MerkleProof:
    """Inclusion proof for one leaf"""
    leaf: str
    root: str
    index: int
    path: List[ProofStep] = field(default_factory=list)

    def verify(self, root: Optional[str] = None) -> bool:
        """Replay against `root` (defaults to the root captured at build time)"""
        return verify_proof(root if root is not None else self.root, self.leaf, self.path)

    def to_dict(self) -> dict:
        return {
            "leaf": self.leaf,
            "root": self.root,
            "index": self.index,
            "proof": [step.to_dict() for step in self.path],
        }


def build_proof(leaves: Sequence[str], index: int) -> MerkleProof:
    """Generate the authentication path for leaves[index]"""
    if not 0 <= index < len(leaves):
        raise ValidationError(f"leaf index {index} out of range for {len(leaves)} leaves")

    levels = build_levels(leaves)
    path = []
    idx = index
    for level in levels[:-1]:
        if idx % 2 == 1:
            path.append(ProofStep(sibling=level[idx - 1], position=LEFT))
        else:
            sibling = level[idx + 1] if idx + 1 < len(level) else level[idx]
            path.append(ProofStep(sibling=sibling, position=RIGHT))
        idx //= 2

    return MerkleProof(leaf=leaves[index], root=levels[-1][0], index=index, path=path)


def verify_proof(root: str, leaf: str, path: Iterable[ProofStep]) -> bool:
    """Replay an authentication path and compare with the claimed root"""
    try:
        current = leaf
        for step in path:
            if step.position == LEFT:
                current = hash_pair(step.sibling, current)
            elif step.position == RIGHT:
                current = hash_pair(current, step.sibling)
            else:
                return False
    except ValueError:
        return False
    return current == root.lower()


class MerkleCommitment:
    """
    Commitment over a set of reserve assets.

    Assets are sorted by id so the same set always yields the same root
    regardless of the order it was reported in.
    """

    def __init__(self, assets: Iterable[AssetRecord]):
        self.assets: List[AssetRecord] = sorted(assets, key=lambda a: a.id)
        ids = [a.id for a in self.assets]
        if len(ids) != len(set(ids)):
            raise ValidationError("duplicate asset ids in commitment")
        self.leaves: List[str] = [hash_asset(a) for a in self.assets]
        self._levels = build_levels(self.leaves)

    @property
    def root(self) -> str:
        return self._levels[-1][0]

    def index_of(self, asset_id: str) -> int:
        for i, asset in enumerate(self.assets):
            if asset.id == asset_id:
                return i
        raise NotFoundError(f"Asset not found: {asset_id}")

    def proof_for(self, asset_id: str) -> MerkleProof:
        return build_proof(self.leaves, self.index_of(asset_id))
