"""
Merkle Tree Tests

Odd-count promotion (no duplication), proof paths, and shape checks.
"""

import pytest

from conftest import digest

from integrity_system.core.datashapes import ProofSide, ProofStep
from integrity_system.core.hashing import merkle_leaf, merkle_node
from integrity_system.core.merkle import MerkleTree, expected_sides


def hashes(n):
    return [digest(i) for i in range(n)]


class TestConstruction:

    def test_single_leaf_root_is_leaf_hash(self):
        tree = MerkleTree(hashes(1))
        assert tree.root_hash == merkle_leaf(digest(0))
        assert tree.get_proof(0) == []

    def test_three_leaves_promote_last(self):
        """
        HAPPY PATH: The unpaired third leaf is carried up unchanged.
        """
        h = hashes(3)
        l0, l1, l2 = (merkle_leaf(x) for x in h)

        assert MerkleTree(h).root_hash == merkle_node(merkle_node(l0, l1), l2)

    def test_no_duplication_collision(self):
        """
        EDGE CASE: [a, b, c] and [a, b, c, c] must not share a root.
        """
        h = hashes(3)
        assert MerkleTree(h).root_hash != MerkleTree(h + [h[-1]]).root_hash

    def test_deterministic(self):
        assert MerkleTree(hashes(7)).root_hash == MerkleTree(hashes(7)).root_hash

    def test_empty_rejected(self):
        with pytest.raises(ValueError):
            MerkleTree([])


class TestProofs:

    @pytest.mark.parametrize("size", [1, 2, 3, 5, 8, 10, 13])
    def test_every_leaf_proves(self, size):
        h = hashes(size)
        tree = MerkleTree(h)
        for index in range(size):
            proof = tree.get_proof(index)
            assert MerkleTree.verify_proof(h[index], proof, tree.root_hash, index, size)

    def test_proof_shape_matches_position(self):
        tree = MerkleTree(hashes(5))
        for index in range(5):
            assert [s.side for s in tree.get_proof(index)] == expected_sides(index, 5)

    def test_promoted_leaf_has_short_path(self):
        """
        EDGE CASE: Leaf 4 of 5 skips the levels where it had no sibling.
        """
        assert expected_sides(4, 5) == [ProofSide.LEFT]

    def test_wrong_leaf_rejected(self):
        h = hashes(8)
        tree = MerkleTree(h)
        assert not MerkleTree.verify_proof(h[3], tree.get_proof(4), tree.root_hash, 4, 8)

    def test_flipped_sibling_rejected(self):
        h = hashes(10)
        tree = MerkleTree(h)
        proof = tree.get_proof(4)
        first = proof[0]
        flipped_char = "0" if first.hash[0] != "0" else "1"
        proof[0] = ProofStep(flipped_char + first.hash[1:], first.side)

        assert not MerkleTree.verify_proof(h[4], proof, tree.root_hash, 4, 10)

    def test_shape_mismatch_rejected_even_if_root_matches(self):
        """
        EDGE CASE: A correct path presented for the wrong index fails the shape check.
        """
        h = hashes(4)
        tree = MerkleTree(h)
        proof = tree.get_proof(1)

        assert MerkleTree.verify_proof(h[1], proof, tree.root_hash)
        assert not MerkleTree.verify_proof(h[1], proof, tree.root_hash, 2, 4)

    def test_non_hex_step_rejected(self):
        h = hashes(2)
        tree = MerkleTree(h)
        assert not MerkleTree.verify_proof(h[0], [ProofStep("zz", ProofSide.RIGHT)], tree.root_hash)

    def test_index_out_of_range(self):
        with pytest.raises(IndexError):
            MerkleTree(hashes(3)).get_proof(3)
