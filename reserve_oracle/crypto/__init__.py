"""Signature verification and Merkle commitments"""

from .signatures import SignatureVerifier, Signer, message_digest, normalize_public_key
from .merkle import (
    EMPTY_TREE_ROOT,
    MerkleCommitment,
    MerkleProof,
    ProofStep,
    build_proof,
    hash_asset,
    hash_leaf,
    hash_pair,
    merkle_root,
    verify_proof,
)

__all__ = [
    "SignatureVerifier",
    "Signer",
    "message_digest",
    "normalize_public_key",
    "EMPTY_TREE_ROOT",
    "MerkleCommitment",
    "MerkleProof",
    "ProofStep",
    "build_proof",
    "hash_asset",
    "hash_leaf",
    "hash_pair",
    "merkle_root",
    "verify_proof",
]
