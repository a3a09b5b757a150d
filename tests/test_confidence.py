import unittest

import numpy as np

from phylogwas.confidence import (
    ML_CONFIDENCE_THRESHOLD,
    continuous_confidence,
    discrete_confidence,
    discretize_confidence,
)
from phylogwas.errors import InvalidTraitError


class TestConfidence(unittest.TestCase):
    def test_continuous_confidence_is_all_ones(self) -> None:
        conf = continuous_confidence(np.array([0.5, -1.2, 3.0, 2.2, 0.0]))
        np.testing.assert_array_equal(conf, np.ones(5, dtype=np.int64))

    def test_continuous_confidence_rejects_empty(self) -> None:
        with self.assertRaises(InvalidTraitError):
            continuous_confidence(np.array([]))

    def test_continuous_confidence_rejects_non_numeric(self) -> None:
        with self.assertRaises(InvalidTraitError):
            continuous_confidence(np.array(["a", "b"]))

    def test_discrete_confidence_marks_tips_and_thresholds_nodes(self) -> None:
        lik = np.array(
            [
                [0.5, 0.5],
                [0.875, 0.125],
                [0.1, 0.9],
                [0.8, 0.2],
            ]
        )
        conf = discrete_confidence(lik, n_tips=3)
        np.testing.assert_array_equal(conf, [1, 1, 1, 0, 1, 1, 0])

    def test_custom_threshold(self) -> None:
        lik = np.array([[0.7, 0.3], [0.6, 0.4]])
        conf = discrete_confidence(lik, n_tips=2, threshold=0.65)
        np.testing.assert_array_equal(conf, [1, 1, 1, 0])

    def test_threshold_out_of_range(self) -> None:
        for bad in (0.0, 1.0, 1.5, -0.2):
            with self.assertRaises(InvalidTraitError):
                discretize_confidence(np.array([0.9]), bad)

    def test_default_threshold(self) -> None:
        self.assertEqual(ML_CONFIDENCE_THRESHOLD, 0.875)


if __name__ == "__main__":
    unittest.main()
