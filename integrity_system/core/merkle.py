#!/usr/bin/env python3
"""
merkle.py - Merkle tree over a checkpoint's entry hashes

O(log N) membership proofs: one disclosed entry plus its sibling path is
enough to reach the checkpoint root without revealing any other entry.

Construction:
    - Leaves are H(0x00 || entry_hash), in sequence order
    - Interior nodes are H(0x01 || left || right)
    - Odd count at any level: the last node is promoted unchanged (no
      duplication, so lists of different length never share a root)

Usage:
    tree = MerkleTree(entry_hashes)
    root = tree.root_hash
    proof = tree.get_proof(entry_index)
    valid = MerkleTree.verify_proof(entry_hash, proof, root, entry_index, len(entry_hashes))
"""

from typing import List, Optional, Sequence

from integrity_system.core.datashapes import ProofSide, ProofStep
from integrity_system.core.hashing import is_digest, merkle_leaf, merkle_node


def expected_sides(leaf_index: int, leaf_count: int) -> List[ProofSide]:
    """
    The side of every sibling on the path from leaf_index to the root.

    Promoted levels contribute no step, so the shape depends on both the
    position and the tree size.
    """
    if leaf_count < 1 or not 0 <= leaf_index < leaf_count:
        raise ValueError(f"Leaf {leaf_index} outside tree of {leaf_count}")

    sides = []
    index, width = leaf_index, leaf_count
    while width > 1:
        if index % 2 == 1:
            sides.append(ProofSide.LEFT)
        elif index + 1 < width:
            sides.append(ProofSide.RIGHT)
        # else: unpaired last node, promoted
        index //= 2
        width = (width + 1) // 2
    return sides


class MerkleTree:
    """Binary hash tree built once from an ordered list of entry hashes."""

    def __init__(self, entry_hashes: Sequence[str]):
        if not entry_hashes:
            raise ValueError("Cannot build a Merkle tree with no leaves")

        self.leaf_count = len(entry_hashes)
        self.levels: List[List[str]] = [[merkle_leaf(h) for h in entry_hashes]]

        while len(self.levels[-1]) > 1:
            current = self.levels[-1]
            parent = [
                merkle_node(current[i], current[i + 1])
                for i in range(0, len(current) - 1, 2)
            ]
            if len(current) % 2 == 1:
                parent.append(current[-1])
            self.levels.append(parent)

    @property
    def root_hash(self) -> str:
        """The root hash - represents entire tree."""
        return self.levels[-1][0]

    def get_proof(self, index: int) -> List[ProofStep]:
        """Sibling path for the leaf at index (0-based within this tree)."""
        if not 0 <= index < self.leaf_count:
            raise IndexError(f"Leaf index {index} outside tree of {self.leaf_count}")

        proof = []
        for level in self.levels[:-1]:
            if index % 2 == 1:
                proof.append(ProofStep(level[index - 1], ProofSide.LEFT))
            elif index + 1 < len(level):
                proof.append(ProofStep(level[index + 1], ProofSide.RIGHT))
            index //= 2
        return proof

    @staticmethod
    def compute_root(entry_hash: str, proof: Sequence[ProofStep]) -> str:
        """Fold a proof path onto a leaf. Raises ValueError on non-hex input."""
        current = merkle_leaf(entry_hash)
        for step in proof:
            if not is_digest(step.hash):
                raise ValueError(f"Proof step is not a digest: {step.hash!r}")
            if step.side == ProofSide.LEFT:
                current = merkle_node(step.hash, current)
            else:
                current = merkle_node(current, step.hash)
        return current

    @staticmethod
    def verify_proof(
        entry_hash: str,
        proof: Sequence[ProofStep],
        root: str,
        leaf_index: Optional[int] = None,
        leaf_count: Optional[int] = None
    ) -> bool:
        """
        Verify entry belongs to tree without walking the full chain.

        With leaf_index and leaf_count, the proof must also have exactly the
        shape that position implies - a valid path for a different leaf is
        rejected.
        """
        if leaf_index is not None and leaf_count is not None:
            try:
                shape = expected_sides(leaf_index, leaf_count)
            except ValueError:
                return False
            if [step.side for step in proof] != shape:
                return False

        if not is_digest(entry_hash) or not is_digest(root):
            return False
        try:
            return MerkleTree.compute_root(entry_hash, proof) == root
        except ValueError:
            return False
