"""Per-node confidence labels for reconstructed traits.

Confidence is binary: 1 marks a tip or a high-confidence internal node, 0 a
low-confidence internal node. Tips are observed, so they are always 1.
"""

from __future__ import annotations

import numpy as np

from .errors import InvalidTraitError

# A 7:1 likelihood ratio between the best and the other state (0.875 / 0.125).
ML_CONFIDENCE_THRESHOLD = 0.875


def continuous_confidence(tip_and_node_states: np.ndarray) -> np.ndarray:
    """All-ones confidence for a continuous reconstruction.

    The Brownian-motion fit only yields a symmetric interval per node, which
    does not single out uncertain nodes, so every value counts as confident.
    """
    values = np.asarray(tip_and_node_states)
    if values.ndim != 1 or values.shape[0] == 0:
        raise InvalidTraitError("Continuous reconstruction must be a non-empty vector")
    if not np.issubdtype(values.dtype, np.number):
        raise InvalidTraitError("Continuous reconstruction must be numeric")
    return np.ones(values.shape[0], dtype=np.int64)


def discrete_confidence(
    node_likelihoods: np.ndarray,
    n_tips: int,
    threshold: float = ML_CONFIDENCE_THRESHOLD,
) -> np.ndarray:
    """Tips followed by internal nodes; a node is confident when its best state reaches ``threshold``."""
    check_threshold(threshold)
    lik = np.asarray(node_likelihoods, dtype=float)
    if lik.ndim != 2:
        raise InvalidTraitError(f"Node likelihoods must be a 2-D matrix; got {lik.ndim} dims")
    scores = np.concatenate([np.ones(n_tips, dtype=float), lik.max(axis=1)])
    return discretize_confidence(scores, threshold)


def discretize_confidence(values: np.ndarray, cutoff: float) -> np.ndarray:
    check_threshold(cutoff)
    return (np.asarray(values, dtype=float) >= cutoff).astype(np.int64)


def check_threshold(threshold: float) -> None:
    if not 0.0 < threshold < 1.0:
        raise InvalidTraitError(f"Confidence threshold must be in (0, 1); got {threshold}")
