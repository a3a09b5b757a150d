"""Brownian-motion ancestral reconstruction for continuous traits (REML)."""

from __future__ import annotations

import math
import warnings
from dataclasses import dataclass

import numpy as np
from scipy import stats

from .errors import DimensionMismatchError, InvalidTraitError
from .tree import PhyloTree, shared_path_covariance, validate_tree

# Zero-length branches make the Laplacian singular.
_MIN_BRANCH_LENGTH = 1e-8


@dataclass(frozen=True)
class ContinuousReconstruction:
    node_states: np.ndarray
    tip_and_node_states: np.ndarray
    sigma2: float
    sigma2_se: float
    ci95: np.ndarray
    restricted_log_likelihood: float

    @property
    def model(self) -> str:
        return "BM"


def reconstruct_continuous(tree: PhyloTree, values: np.ndarray) -> ContinuousReconstruction:
    """Estimate internal-node values under Brownian motion.

    The rate is the REML estimate from the tip data. Node values minimise
    ``sum((x_parent - x_child)**2 / length)`` with tips held at their observed
    values, which is the REML ancestral estimator and does not depend on the
    rate. Confidence intervals use a t quantile with ``n_nodes`` degrees of
    freedom.
    """
    validate_tree(tree)
    x = np.asarray(values, dtype=float).reshape(-1)
    if x.shape[0] != tree.n_tips:
        raise DimensionMismatchError(
            f"Trait vector has {x.shape[0]} values but the tree has {tree.n_tips} tips"
        )
    if not np.all(np.isfinite(x)):
        raise InvalidTraitError("Continuous trait values must be finite")

    lengths = np.maximum(tree.edge_length, _MIN_BRANCH_LENGTH)

    # Precision warnings from near-singular systems are benign here.
    with warnings.catch_warnings(), np.errstate(all="ignore"):
        warnings.simplefilter("ignore")
        sigma2, sigma2_se, reml_ll = _reml_rate(tree, x, lengths)
        node_states, laplacian_inv_diag = _node_estimates(tree, x, lengths)

        se = np.sqrt(laplacian_inv_diag * sigma2)
        half_width = se * stats.t.ppf(0.975, tree.n_nodes)
        ci95 = np.column_stack([node_states - half_width, node_states + half_width])

    return ContinuousReconstruction(
        node_states=node_states,
        tip_and_node_states=np.concatenate([x, node_states]),
        sigma2=sigma2,
        sigma2_se=sigma2_se,
        ci95=ci95,
        restricted_log_likelihood=reml_ll,
    )


def _reml_rate(tree: PhyloTree, x: np.ndarray, lengths: np.ndarray) -> tuple[float, float, float]:
    n = tree.n_tips
    if np.ptp(x) == 0.0:
        # No variation: zero rate, and the REML likelihood is undefined.
        return 0.0, 0.0, float("nan")
    cov = shared_path_covariance(tree, lengths)
    ones = np.ones(n)

    cinv_x = np.linalg.solve(cov, x)
    cinv_1 = np.linalg.solve(cov, ones)
    denom = float(ones @ cinv_1)
    mu = float(ones @ cinv_x) / denom
    resid = x - mu
    quad = float(resid @ np.linalg.solve(cov, resid))

    sigma2 = quad / (n - 1)
    sigma2_se = sigma2 * math.sqrt(2.0 / (n - 1))
    if sigma2 <= 0.0:
        return 0.0, 0.0, float("nan")

    _, logdet = np.linalg.slogdet(cov)
    reml_ll = -0.5 * (
        (n - 1) * math.log(2.0 * math.pi * sigma2) + logdet + math.log(denom) + quad / sigma2
    )
    return sigma2, sigma2_se, float(reml_ll)


def _node_estimates(tree: PhyloTree, x: np.ndarray, lengths: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    n_tips = tree.n_tips
    lap = np.zeros((tree.n_nodes, tree.n_nodes), dtype=float)
    rhs = np.zeros(tree.n_nodes, dtype=float)

    for e in range(tree.n_edges):
        w = 1.0 / lengths[e]
        p = int(tree.edge_parent[e]) - n_tips
        child = int(tree.edge_child[e])
        lap[p, p] += w
        if child < n_tips:
            rhs[p] += w * x[child]
        else:
            c = child - n_tips
            lap[c, c] += w
            lap[p, c] -= w
            lap[c, p] -= w

    lap_inv = np.linalg.inv(lap)
    return lap_inv @ rhs, np.diag(lap_inv).copy()
