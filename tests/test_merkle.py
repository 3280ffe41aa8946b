"""
Merkle engine tests.
"""

import hashlib
import unittest

from opentruth import (
    EmptyInputError,
    IndexOutOfRangeError,
    MerkleProof,
    MerkleTree,
    build_tree,
    digest,
    merkle_root,
    prove_membership,
    verify_proof,
)
from opentruth.merkle import hash_pair


def h(text: str):
    return digest(text.encode())


def sorted_pair(a: bytes, b: bytes) -> bytes:
    return hashlib.sha256(min(a, b) + max(a, b)).digest()


class TestConstruction(unittest.TestCase):

    def test_empty_rejected(self):
        with self.assertRaises(EmptyInputError):
            build_tree([])

    def test_single_leaf_is_root(self):
        tree = build_tree([h("a")])
        self.assertEqual(tree.root, h("a"))
        self.assertEqual(len(tree.prove(0)), 0)
        self.assertTrue(verify_proof(h("a"), tree.prove(0), tree.root))

    def test_two_leaves(self):
        a, b = h("a").value, h("b").value
        self.assertEqual(merkle_root([h("a"), h("b")]).value, sorted_pair(a, b))

    def test_pair_hash_is_order_independent(self):
        a, b = h("a").value, h("b").value
        self.assertEqual(hash_pair(a, b), hash_pair(b, a))

    def test_odd_count_duplicates_last(self):
        a, b, c = (h(x).value for x in "abc")
        expected = sorted_pair(sorted_pair(a, b), sorted_pair(c, c))
        self.assertEqual(merkle_root([h("a"), h("b"), h("c")]).value, expected)

    def test_five_leaves(self):
        leaves = [h(x).value for x in "abcde"]
        l1 = [sorted_pair(leaves[0], leaves[1]), sorted_pair(leaves[2], leaves[3]),
              sorted_pair(leaves[4], leaves[4])]
        l2 = [sorted_pair(l1[0], l1[1]), sorted_pair(l1[2], l1[2])]
        self.assertEqual(merkle_root([h(x) for x in "abcde"]).value, sorted_pair(l2[0], l2[1]))

    def test_changing_a_leaf_changes_root(self):
        r1 = merkle_root([h("a"), h("b"), h("c")])
        r2 = merkle_root([h("a"), h("b"), h("d")])
        self.assertNotEqual(r1, r2)

    def test_order_matters(self):
        self.assertNotEqual(
            merkle_root([h("a"), h("b"), h("c")]),
            merkle_root([h("c"), h("b"), h("a")]),
        )

    def test_accepts_text_digests(self):
        leaves = [h("a"), h("b")]
        self.assertEqual(build_tree([str(x) for x in leaves]).root, build_tree(leaves).root)
        self.assertEqual(build_tree([x.root_hex for x in leaves]).root, build_tree(leaves).root)

    def test_tree_shape(self):
        tree = MerkleTree.build([h(str(i)) for i in range(5)])
        self.assertEqual(len(tree), 5)
        self.assertEqual(tree.depth, 3)
        self.assertEqual(tree.leaves[2], h("2"))
        self.assertTrue(tree.root_hex.startswith("0x"))


class TestProofs(unittest.TestCase):

    def test_every_index_verifies(self):
        for n in range(1, 18):
            leaves = [h(f"leaf-{i}") for i in range(n)]
            tree = build_tree(leaves)
            for i in range(n):
                proof = prove_membership(tree, i)
                self.assertTrue(verify_proof(leaves[i], proof, tree.root), f"n={n} i={i}")

    def test_proof_for_index_two_fails_for_leaf_zero(self):
        leaves = [h("a"), h("b"), h("c")]
        tree = build_tree(leaves)
        proof = tree.prove(2)
        self.assertFalse(verify_proof(leaves[0], proof, tree.root))

    def test_duplicate_leaves_allowed(self):
        leaves = [h("a"), h("a"), h("b")]
        tree = build_tree(leaves)
        for i in range(3):
            self.assertTrue(verify_proof(leaves[i], tree.prove(i), tree.root))

    def test_out_of_range(self):
        tree = build_tree([h("a"), h("b")])
        for index in (-1, 2, 100):
            with self.assertRaises(IndexOutOfRangeError):
                tree.prove(index)

    def test_out_of_range_is_index_error(self):
        with self.assertRaises(IndexError):
            build_tree([h("a")]).prove(1)

    def test_wrong_root_fails(self):
        tree = build_tree([h("a"), h("b")])
        self.assertFalse(verify_proof(h("a"), tree.prove(0), h("z")))

    def test_textual_round_trip(self):
        tree = build_tree([h(x) for x in "abcdef"])
        proof = tree.prove(3)
        restored = MerkleProof.from_list(proof.to_list(), leaf_index=3)
        self.assertEqual(restored, proof)
        self.assertTrue(verify_proof(h("d").root_hex, proof.to_list(), tree.root_hex))


class TestMalformedProofs(unittest.TestCase):
    """verify_proof runs on untrusted input and must never raise."""

    def setUp(self):
        self.leaves = [h(x) for x in "abcd"]
        self.tree = build_tree(self.leaves)
        self.proof = self.tree.prove(1)

    def test_truncated_proof(self):
        self.assertFalse(verify_proof(self.leaves[1], list(self.proof.siblings[:-1]), self.tree.root))

    def test_extended_proof(self):
        self.assertFalse(verify_proof(self.leaves[1], list(self.proof.siblings) + [h("x")], self.tree.root))

    def test_garbage_inputs(self):
        for leaf, proof, root in (
            (None, self.proof, self.tree.root),
            (self.leaves[1], None, self.tree.root),
            (self.leaves[1], self.proof, None),
            (self.leaves[1], ["0xzz"], self.tree.root),
            (self.leaves[1], [b"\x00" * 5], self.tree.root),
            (self.leaves[1], "not a list", self.tree.root),
            (b"short", self.proof, self.tree.root),
            (12345, [12345], 12345),
        ):
            self.assertFalse(verify_proof(leaf, proof, root))

    def test_corrupt_sibling(self):
        corrupted = bytearray(self.proof.siblings[0].value)
        corrupted[0] ^= 0x01
        siblings = [bytes(corrupted)] + list(self.proof.siblings[1:])
        self.assertFalse(verify_proof(self.leaves[1], siblings, self.tree.root))


if __name__ == "__main__":
    unittest.main()
