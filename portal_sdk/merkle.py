"""
Merkle chunk tree for partial order fulfillment.

An order is split into 100 chunks (1% each). Each chunk index 0-99, plus
the full-fill index 100, gets its own independent 32-byte secret. The
hashed secrets are committed to with a binary Merkle tree whose root is
the order-level hashlock.

Leaf:
    leaf[i] = SHA256(BE32(i) || SHA256(secret[i]))

Parent:
    SHA256(min(a, b) || max(a, b))      (sorted pairs)

An odd node at the end of a level is promoted to the next level unchanged.

Verification recomputes the leaf from (index, hashed secret) and folds the
proof up to the root; the index is bound into the leaf so a proof for one
index can never be replayed for another.
"""

import struct
import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from .core import sha256, random_bytes, strip_0x, TOTAL_SECRETS
from .errors import ValidationError

log = logging.getLogger(__name__)


@dataclass
class ChunkSecrets:
    """101 independent secrets and their SHA256 hashes."""
    secrets: List[bytes]
    hashed_secrets: List[bytes]

    def __len__(self) -> int:
        return len(self.secrets)

    def secret_hex(self, index: int) -> str:
        return self.secrets[index].hex()

    def hash_hex(self, index: int) -> str:
        return self.hashed_secrets[index].hex()


def generate_chunk_secrets(count: int = TOTAL_SECRETS) -> ChunkSecrets:
    """
    Generate `count` independent secrets.

    Each secret is drawn separately from the OS CSPRNG; no secret is
    derivable from another.
    """
    if count <= 0:
        raise ValidationError("Secret count must be positive")
    secrets_list = [random_bytes(32) for _ in range(count)]
    hashed = [sha256(s) for s in secrets_list]
    return ChunkSecrets(secrets=secrets_list, hashed_secrets=hashed)


def chunk_leaf(index: int, hashed_secret: bytes) -> bytes:
    """leaf = SHA256(BE32(index) || hashed_secret)."""
    if not 0 <= index <= 0xFFFFFFFF:
        raise ValidationError(f"Chunk index out of range: {index}")
    if len(hashed_secret) != 32:
        raise ValidationError(f"Hashed secret must be 32 bytes, got {len(hashed_secret)}")
    return sha256(struct.pack(">I", index) + hashed_secret)


def hash_pair(a: bytes, b: bytes) -> bytes:
    """Sorted-pair parent hash."""
    if a <= b:
        return sha256(a + b)
    return sha256(b + a)


def fold_proof(leaf: bytes, proof: List[bytes]) -> bytes:
    """Fold a sibling path up from `leaf`."""
    node = leaf
    for sibling in proof:
        node = hash_pair(node, sibling)
    return node


class MerkleChunkTree:
    """Binary Merkle tree over chunk leaves with sorted pairs."""

    def __init__(self, leaves: List[bytes]):
        if not leaves:
            raise ValidationError("Cannot build a Merkle tree with no leaves")
        self.leaves = list(leaves)
        self.layers: List[List[bytes]] = [self.leaves]
        self._build()

    @classmethod
    def from_hashed_secrets(cls, hashed_secrets: List[bytes]) -> "MerkleChunkTree":
        return cls([chunk_leaf(i, h) for i, h in enumerate(hashed_secrets)])

    def _build(self):
        nodes = self.leaves
        while len(nodes) > 1:
            level = []
            for i in range(0, len(nodes), 2):
                if i + 1 == len(nodes):
                    # Odd node out: promote unchanged
                    level.append(nodes[i])
                else:
                    level.append(hash_pair(nodes[i], nodes[i + 1]))
            self.layers.append(level)
            nodes = level

    @property
    def root(self) -> bytes:
        return self.layers[-1][0]

    @property
    def root_hex(self) -> str:
        return "0x" + self.root.hex()

    @property
    def depth(self) -> int:
        return len(self.layers) - 1

    def get_proof(self, index: int) -> List[bytes]:
        """Sibling hashes from leaf to root for leaf `index`."""
        if not 0 <= index < len(self.leaves):
            raise ValidationError(f"Leaf index out of range: {index}")

        proof = []
        for layer in self.layers[:-1]:
            pair_index = index - 1 if index % 2 else index + 1
            if pair_index < len(layer):
                proof.append(layer[pair_index])
            index //= 2
        return proof

    def proof_hex(self, index: int) -> List[str]:
        return ["0x" + p.hex() for p in self.get_proof(index)]

    def verify(self, index: int, hashed_secret: bytes, proof: List[bytes]) -> bool:
        return verify_chunk(index, hashed_secret, proof, self.root, leaf_count=len(self.leaves))


def build_tree(hashed_secrets: List[bytes]) -> Tuple[bytes, MerkleChunkTree]:
    """(root, tree) over the hashed secrets of an order."""
    tree = MerkleChunkTree.from_hashed_secrets(hashed_secrets)
    return tree.root, tree


def verify_chunk(index: int, hashed_secret: bytes, proof: List[bytes],
                 root: bytes, leaf_count: Optional[int] = TOTAL_SECRETS) -> bool:
    """
    Verify that `hashed_secret` is committed at `index` under `root`.

    Returns False (never raises) for malformed index, hash or proof.
    """
    if leaf_count is not None and not 0 <= index < leaf_count:
        return False
    if not isinstance(hashed_secret, (bytes, bytearray)) or len(hashed_secret) != 32:
        return False
    if any(len(p) != 32 for p in proof):
        return False
    if leaf_count is not None and len(proof) > max(1, (leaf_count - 1).bit_length()):
        return False

    leaf = chunk_leaf(index, bytes(hashed_secret))
    return fold_proof(leaf, proof) == root


def verify_chunk_secret(index: int, secret: bytes, proof: List[bytes],
                        root: bytes, leaf_count: Optional[int] = TOTAL_SECRETS) -> bool:
    """Verify a revealed secret (not just its hash) for chunk `index`."""
    if not isinstance(secret, (bytes, bytearray)) or len(secret) != 32:
        return False
    return verify_chunk(index, sha256(bytes(secret)), proof, root, leaf_count)


def parse_proof(proof_hex: List[str]) -> List[bytes]:
    """Decode a hex proof as returned by `MerkleChunkTree.proof_hex`."""
    try:
        return [bytes.fromhex(strip_0x(p)) for p in proof_hex]
    except (ValueError, TypeError) as e:
        raise ValidationError(f"Malformed proof: {e}")
