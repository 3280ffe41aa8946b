"""
OpenTruth Merkle Engine

Binary Merkle trees over an ordered list of SHA-256 digests.

Construction rules:
1. Leaves are the raw 32-byte digests, in caller order (not re-hashed)
2. Parent hashing: sha256(min(a, b) || max(a, b)), ordering by byte value
3. Padding: if a level has an odd count, the last node is paired with itself
4. Single leaf: root = leaf, proof is empty
5. Empty leaf list: EmptyInputError

Because pairs are sorted before hashing, a proof is just the list of sibling
digests; the verifier never needs left/right positions.
"""

import hashlib
from dataclasses import dataclass
from typing import Any, List, Sequence, Tuple, Union

from .errors import EmptyInputError, IndexOutOfRangeError
from .hashing import DIGEST_SIZE, SHA256, Digest


def hash_pair(a: bytes, b: bytes) -> bytes:
    """Sorted-pair parent hash."""
    if b < a:
        a, b = b, a
    return hashlib.sha256(a + b).digest()


@dataclass(frozen=True)
class MerkleProof:
    """Membership proof: sibling digests from the leaf level up to the root."""
    leaf_index: int
    siblings: Tuple[Digest, ...]

    def to_list(self) -> List[str]:
        """Textual form, one "0x<hex>" entry per level."""
        return [s.root_hex for s in self.siblings]

    @classmethod
    def from_list(cls, items: Sequence[str], leaf_index: int = -1) -> 'MerkleProof':
        return cls(leaf_index=leaf_index, siblings=tuple(Digest.coerce(i) for i in items))

    def __len__(self) -> int:
        return len(self.siblings)


class MerkleTree:
    """
    Immutable binary Merkle tree.

    Built once from a finalized leaf list; safe to share across threads.
    """

    __slots__ = ("_levels",)

    def __init__(self, levels: Tuple[Tuple[bytes, ...], ...]):
        self._levels = levels

    @classmethod
    def build(cls, leaves: Sequence[Union[Digest, bytes, str]]) -> 'MerkleTree':
        """
        Build a tree from an ordered sequence of digests.

        Duplicates are permitted; order determines the root and proof indices.

        Raises:
            EmptyInputError: if leaves is empty
        """
        if not leaves:
            raise EmptyInputError("Cannot build Merkle tree with no leaves")

        level = tuple(Digest.coerce(leaf).value for leaf in leaves)
        levels = [level]
        while len(level) > 1:
            if len(level) % 2 == 1:
                level = level + (level[-1],)
            level = tuple(
                hash_pair(level[i], level[i + 1]) for i in range(0, len(level), 2)
            )
            levels.append(level)
        return cls(tuple(levels))

    @property
    def root(self) -> Digest:
        return Digest(SHA256, self._levels[-1][0])

    @property
    def root_hex(self) -> str:
        return self.root.root_hex

    @property
    def leaves(self) -> List[Digest]:
        return [Digest(SHA256, leaf) for leaf in self._levels[0]]

    @property
    def depth(self) -> int:
        return len(self._levels) - 1

    def __len__(self) -> int:
        return len(self._levels[0])

    def prove(self, leaf_index: int) -> MerkleProof:
        """
        Produce the membership proof for the leaf at `leaf_index`.

        Raises:
            IndexOutOfRangeError: if the index is not a valid leaf position
        """
        leaf_count = len(self._levels[0])
        if isinstance(leaf_index, bool) or not isinstance(leaf_index, int) \
                or leaf_index < 0 or leaf_index >= leaf_count:
            raise IndexOutOfRangeError(leaf_index, leaf_count)

        siblings = []
        index = leaf_index
        for level in self._levels[:-1]:
            sibling_index = index ^ 1
            if sibling_index >= len(level):
                # Odd level: the last node was paired with itself.
                sibling_index = index
            siblings.append(Digest(SHA256, level[sibling_index]))
            index //= 2
        return MerkleProof(leaf_index=leaf_index, siblings=tuple(siblings))


def build_tree(leaves: Sequence[Union[Digest, bytes, str]]) -> MerkleTree:
    """Build a Merkle tree over `leaves`."""
    return MerkleTree.build(leaves)


def prove_membership(tree: MerkleTree, leaf_index: int) -> MerkleProof:
    """Membership proof for the leaf at `leaf_index`."""
    return tree.prove(leaf_index)


def merkle_root(leaves: Sequence[Union[Digest, bytes, str]]) -> Digest:
    """Convenience: root digest of the tree over `leaves`."""
    return MerkleTree.build(leaves).root


def _as_digest_bytes(value: Any) -> bytes:
    if isinstance(value, MerkleProof):
        raise ValueError("Expected a digest, got a proof")
    raw = Digest.coerce(value).value
    if len(raw) != DIGEST_SIZE:
        raise ValueError("Digest has wrong length")
    return raw


def verify_proof(leaf: Any, proof: Any, root: Any) -> bool:
    """
    Verify a membership proof.

    Recomputes upward from `leaf`, sorting (accumulator, sibling) at each
    level, and compares the result with `root` byte-exactly.

    Never raises: proofs come from untrusted sources, so any malformed
    input (wrong types, corrupt hex, wrong lengths) simply verifies False.
    """
    try:
        acc = _as_digest_bytes(leaf)
        expected = _as_digest_bytes(root)
        if isinstance(proof, MerkleProof):
            siblings = proof.siblings
        elif isinstance(proof, (list, tuple)):
            siblings = proof
        else:
            return False
        for sibling in siblings:
            acc = hash_pair(acc, _as_digest_bytes(sibling))
        return acc == expected
    except (ValueError, TypeError):
        return False
