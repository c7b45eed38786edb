#!/usr/bin/env python3
"""
Merkle chunk tree tests.

An order commits to 101 hashed secrets. Every index must verify with its
own proof and fail with any other index's data.
"""

import sys
import os
import hashlib
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from portal_sdk.core import TOTAL_SECRETS
from portal_sdk.errors import ValidationError
from portal_sdk.merkle import (
    MerkleChunkTree, build_tree, generate_chunk_secrets, chunk_leaf, hash_pair,
    verify_chunk, verify_chunk_secret, parse_proof,
)


class TestChunkSecrets(unittest.TestCase):

    def test_count_and_hashes(self):
        secrets = generate_chunk_secrets()
        self.assertEqual(len(secrets), TOTAL_SECRETS)
        for s, h in zip(secrets.secrets, secrets.hashed_secrets):
            self.assertEqual(len(s), 32)
            self.assertEqual(h, hashlib.sha256(s).digest())

    def test_secrets_are_distinct(self):
        secrets = generate_chunk_secrets()
        self.assertEqual(len(set(secrets.secrets)), TOTAL_SECRETS)

    def test_zero_count_rejected(self):
        with self.assertRaises(ValidationError):
            generate_chunk_secrets(0)


class TestMerkleChunkTree(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.secrets = generate_chunk_secrets()
        cls.tree = MerkleChunkTree.from_hashed_secrets(cls.secrets.hashed_secrets)

    def test_leaf_layout(self):
        h = self.secrets.hashed_secrets[7]
        expected = hashlib.sha256((7).to_bytes(4, "big") + h).digest()
        self.assertEqual(chunk_leaf(7, h), expected)

    def test_pairs_are_sorted(self):
        a, b = b"\x01" * 32, b"\x02" * 32
        self.assertEqual(hash_pair(a, b), hash_pair(b, a))
        self.assertEqual(hash_pair(a, b), hashlib.sha256(a + b).digest())

    def test_depth_for_101_leaves(self):
        self.assertEqual(self.tree.depth, 7)
        self.assertEqual(len(self.tree.root), 32)
        self.assertTrue(self.tree.root_hex.startswith("0x"))

    def test_every_index_verifies(self):
        for i in range(TOTAL_SECRETS):
            proof = self.tree.get_proof(i)
            self.assertTrue(
                verify_chunk(i, self.secrets.hashed_secrets[i], proof, self.tree.root),
                f"index {i} failed",
            )
            self.assertTrue(verify_chunk_secret(i, self.secrets.secrets[i], proof, self.tree.root))

    def test_cross_index_rejected(self):
        for i in range(0, TOTAL_SECRETS, 9):
            j = (i + 1) % TOTAL_SECRETS
            proof_i = self.tree.get_proof(i)
            # Another index's hash under this index's proof
            self.assertFalse(verify_chunk(i, self.secrets.hashed_secrets[j], proof_i, self.tree.root))
            # This index's hash claimed at another index
            self.assertFalse(verify_chunk(j, self.secrets.hashed_secrets[i], proof_i, self.tree.root))

    def test_last_leaf_is_promoted(self):
        # 101 leaves: the full-fill leaf is odd at the first level
        proof = self.tree.get_proof(100)
        self.assertLess(len(proof), self.tree.depth)
        self.assertTrue(self.tree.verify(100, self.secrets.hashed_secrets[100], proof))

    def test_malformed_input_returns_false(self):
        proof = self.tree.get_proof(3)
        h = self.secrets.hashed_secrets[3]
        self.assertFalse(verify_chunk(-1, h, proof, self.tree.root))
        self.assertFalse(verify_chunk(TOTAL_SECRETS, h, proof, self.tree.root))
        self.assertFalse(verify_chunk(3, h[:31], proof, self.tree.root))
        self.assertFalse(verify_chunk(3, h, proof + [b"\x00" * 31], self.tree.root))
        self.assertFalse(verify_chunk(3, h, proof + [b"\x00" * 32] * 8, self.tree.root))
        self.assertFalse(verify_chunk_secret(3, b"short", proof, self.tree.root))

    def test_wrong_root_rejected(self):
        other = MerkleChunkTree.from_hashed_secrets(generate_chunk_secrets().hashed_secrets)
        proof = self.tree.get_proof(10)
        self.assertFalse(verify_chunk(10, self.secrets.hashed_secrets[10], proof, other.root))

    def test_build_tree_returns_root(self):
        root, tree = build_tree(self.secrets.hashed_secrets)
        self.assertEqual(root, self.tree.root)
        self.assertEqual(tree.get_proof(55), self.tree.get_proof(55))

    def test_hex_proof_parses(self):
        proof_hex = self.tree.proof_hex(42)
        self.assertEqual(parse_proof(proof_hex), self.tree.get_proof(42))
        with self.assertRaises(ValidationError):
            parse_proof(["zz"])


if __name__ == "__main__":
    unittest.main(verbosity=2)
