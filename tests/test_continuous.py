import math
import unittest

import numpy as np

from phylogwas.continuous import reconstruct_continuous
from phylogwas.errors import DimensionMismatchError, InvalidTraitError, InvalidTreeError
from phylogwas.tree import parse_newick


BALANCED = "((a:1.0,b:1.0):1.0,(c:1.0,d:1.0):1.0);"


class TestContinuousReconstruction(unittest.TestCase):
    def test_balanced_tree_node_values(self) -> None:
        tree = parse_newick(BALANCED)
        recon = reconstruct_continuous(tree, np.array([1.0, 3.0, 5.0, 7.0]))

        # Nodes: root, (a,b), (c,d).
        np.testing.assert_allclose(recon.node_states, [4.0, 8.0 / 3.0, 16.0 / 3.0])
        self.assertEqual(recon.model, "BM")

    def test_reml_rate_matches_independent_contrasts(self) -> None:
        tree = parse_newick(BALANCED)
        recon = reconstruct_continuous(tree, np.array([1.0, 3.0, 5.0, 7.0]))

        # Squared contrasts 2, 2 and 16/3 over n - 1 = 3.
        self.assertAlmostEqual(recon.sigma2, 28.0 / 9.0, places=8)
        self.assertGreater(recon.sigma2_se, 0.0)
        self.assertTrue(math.isfinite(recon.restricted_log_likelihood))

    def test_tips_are_kept_and_nodes_appended(self) -> None:
        tree = parse_newick(BALANCED)
        values = np.array([1.0, 3.0, 5.0, 7.0])
        recon = reconstruct_continuous(tree, values)

        self.assertEqual(recon.tip_and_node_states.shape, (7,))
        np.testing.assert_array_equal(recon.tip_and_node_states[:4], values)
        np.testing.assert_array_equal(recon.tip_and_node_states[4:], recon.node_states)

    def test_confidence_intervals_contain_estimates(self) -> None:
        tree = parse_newick(BALANCED)
        recon = reconstruct_continuous(tree, np.array([0.2, 1.9, 4.1, 3.3]))

        self.assertEqual(recon.ci95.shape, (3, 2))
        self.assertTrue(np.all(recon.ci95[:, 0] <= recon.node_states))
        self.assertTrue(np.all(recon.node_states <= recon.ci95[:, 1]))

    def test_constant_trait(self) -> None:
        tree = parse_newick(BALANCED)
        recon = reconstruct_continuous(tree, np.full(4, 2.5))

        np.testing.assert_allclose(recon.node_states, np.full(3, 2.5))
        self.assertEqual(recon.sigma2, 0.0)
        self.assertEqual(recon.sigma2_se, 0.0)
        self.assertTrue(math.isnan(recon.restricted_log_likelihood))
        np.testing.assert_allclose(recon.ci95, np.full((3, 2), 2.5))

    def test_zero_length_branch(self) -> None:
        tree = parse_newick("((a:0.0,b:1.0):1.0,(c:1.0,d:1.0):1.0);")
        recon = reconstruct_continuous(tree, np.array([1.0, 3.0, 5.0, 7.0]))

        self.assertTrue(np.all(np.isfinite(recon.node_states)))
        self.assertAlmostEqual(recon.node_states[1], 1.0, places=5)

    def test_length_mismatch_rejected(self) -> None:
        tree = parse_newick(BALANCED)
        with self.assertRaises(DimensionMismatchError):
            reconstruct_continuous(tree, np.array([1.0, 2.0, 3.0]))

    def test_non_finite_values_rejected(self) -> None:
        tree = parse_newick(BALANCED)
        with self.assertRaises(InvalidTraitError):
            reconstruct_continuous(tree, np.array([1.0, np.nan, 3.0, 4.0]))

    def test_polytomy_rejected(self) -> None:
        tree = parse_newick("((a:1,b:1,c:1):1,d:1);")
        with self.assertRaises(InvalidTreeError):
            reconstruct_continuous(tree, np.array([1.0, 2.0, 3.0, 4.0]))


if __name__ == "__main__":
    unittest.main()
