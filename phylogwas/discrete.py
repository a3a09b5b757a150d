"""Maximum-likelihood ancestral reconstruction for binary traits with ER/ARD model choice."""

from __future__ import annotations

import math
import warnings
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple, Union

import numpy as np
from scipy import optimize, stats

from .errors import DimensionMismatchError, InvalidTraitError, ModelFitError
from .tree import PhyloTree, validate_tree


EQUAL_RATES = "ER"
ALL_RATES_DIFFERENT = "ARD"
MODELS = (EQUAL_RATES, ALL_RATES_DIFFERENT)

# Cutoffs for preferring ARD over ER.
LRT_ALPHA = 0.05
AIC_MARGIN = 10.0

RATE_BOUNDS = (1e-8, 1e3)
INITIAL_RATE = 0.1
DEFAULT_SEED = 1
DEFAULT_N_STARTS = 3

_BAD_DEVIANCE = 1e50
_HESSIAN_STEP = 1e-4


@dataclass(frozen=True)
class ConvergedFit:
    model: str
    log_likelihood: float
    aic: float
    n_params: int
    rates: Tuple[float, float]
    rates_se: Tuple[float, float]
    node_likelihoods: np.ndarray


@dataclass(frozen=True)
class FailedFit:
    model: str
    reason: str


FitOutcome = Union[ConvergedFit, FailedFit]


@dataclass(frozen=True)
class ModelSelection:
    equal_rates: FitOutcome
    all_rates_different: FitOutcome
    selected: ConvergedFit
    p_value: Optional[float]
    aic_difference: Optional[float]

    @property
    def model(self) -> str:
        return self.selected.model


@dataclass(frozen=True)
class DiscreteReconstruction:
    node_states: np.ndarray
    tip_and_node_states: np.ndarray
    node_likelihoods: np.ndarray
    selection: ModelSelection

    @property
    def model(self) -> str:
        return self.selection.model


def reconstruct_discrete(
    tree: PhyloTree,
    values: np.ndarray,
    *,
    seed: int = DEFAULT_SEED,
    n_starts: int = DEFAULT_N_STARTS,
) -> DiscreteReconstruction:
    """Reconstruct a binary trait under the better of the ER and ARD models.

    Both models are fitted from the same seed. ARD is fitted strictly: any
    numerical warning during its fit marks it as failed, and ER is then kept
    unconditionally. The ML state of each internal node is the argmax of its
    marginal likelihood row (ties resolve to state 0).
    """
    validate_tree(tree)
    states = _check_states(tree, values)

    er = fit_discrete_model(tree, states, EQUAL_RATES, seed=seed, n_starts=n_starts, strict=False)
    ard = fit_discrete_model(tree, states, ALL_RATES_DIFFERENT, seed=seed, n_starts=n_starts, strict=True)
    selection = select_model(er, ard)

    node_likelihoods = selection.selected.node_likelihoods
    node_states = np.argmax(node_likelihoods, axis=1).astype(float)
    tip_values = np.asarray(values, dtype=float).reshape(-1)

    return DiscreteReconstruction(
        node_states=node_states,
        tip_and_node_states=np.concatenate([tip_values, node_states]),
        node_likelihoods=node_likelihoods,
        selection=selection,
    )


def select_model(
    equal_rates: FitOutcome,
    all_rates_different: FitOutcome,
    alpha: float = LRT_ALPHA,
    aic_margin: float = AIC_MARGIN,
) -> ModelSelection:
    """Pick ARD only when the LRT is significant and ARD also wins on AIC by more than ``aic_margin``."""
    er_ok = isinstance(equal_rates, ConvergedFit)
    ard_ok = isinstance(all_rates_different, ConvergedFit)

    if not er_ok and not ard_ok:
        raise ModelFitError(
            "Both discrete models failed to fit: "
            f"ER ({equal_rates.reason}); ARD ({all_rates_different.reason})"
        )
    if not ard_ok:
        return ModelSelection(
            equal_rates=equal_rates,
            all_rates_different=all_rates_different,
            selected=equal_rates,
            p_value=None,
            aic_difference=None,
        )
    if not er_ok:
        return ModelSelection(
            equal_rates=equal_rates,
            all_rates_different=all_rates_different,
            selected=all_rates_different,
            p_value=None,
            aic_difference=None,
        )

    statistic = 2.0 * abs(equal_rates.log_likelihood - all_rates_different.log_likelihood)
    p_value = float(stats.chi2.sf(statistic, df=1))
    aic_difference = equal_rates.aic - all_rates_different.aic

    selected = equal_rates
    if p_value < alpha and aic_difference > aic_margin:
        selected = all_rates_different

    return ModelSelection(
        equal_rates=equal_rates,
        all_rates_different=all_rates_different,
        selected=selected,
        p_value=p_value,
        aic_difference=aic_difference,
    )


def fit_discrete_model(
    tree: PhyloTree,
    states: np.ndarray,
    model: str,
    *,
    seed: int = DEFAULT_SEED,
    n_starts: int = DEFAULT_N_STARTS,
    strict: bool = False,
) -> FitOutcome:
    """Fit an Mk2 model by ML and return a converged or failed outcome.

    With ``strict`` every warning raised while fitting becomes a failure, as do
    an unsuccessful optimiser exit and non-finite standard errors. Without it
    warnings are suppressed and only a non-finite optimum fails.
    """
    if model not in MODELS:
        raise ValueError(f"Unknown discrete model '{model}'; expected one of {MODELS}")
    if n_starts < 1:
        raise ValueError("n_starts must be >= 1")
    states = np.asarray(states, dtype=np.int64)

    with warnings.catch_warnings():
        if strict:
            warnings.simplefilter("error")
        else:
            warnings.simplefilter("ignore")
        try:
            return _fit(tree, states, model, seed, n_starts, strict)
        except (Warning, np.linalg.LinAlgError, FloatingPointError) as exc:
            return FailedFit(model=model, reason=f"{type(exc).__name__}: {exc}")


def _fit(
    tree: PhyloTree,
    states: np.ndarray,
    model: str,
    seed: int,
    n_starts: int,
    strict: bool,
) -> FitOutcome:
    n_params = 1 if model == EQUAL_RATES else 2
    log_lo, log_hi = math.log(RATE_BOUNDS[0]), math.log(RATE_BOUNDS[1])

    def deviance(log_rates: np.ndarray) -> float:
        q01, q10 = _rates_from_params(log_rates, model)
        loglik = _prune(tree, states, q01, q10)[0]
        if not math.isfinite(loglik):
            return _BAD_DEVIANCE
        return -loglik

    rng = np.random.default_rng(seed)
    starts: List[np.ndarray] = [np.full(n_params, math.log(INITIAL_RATE))]
    for _ in range(n_starts - 1):
        starts.append(rng.uniform(math.log(1e-3), math.log(10.0), size=n_params))

    best = None
    for x0 in starts:
        result = optimize.minimize(
            deviance,
            x0,
            method="L-BFGS-B",
            bounds=[(log_lo, log_hi)] * n_params,
        )
        if best is None or result.fun < best.fun:
            best = result

    log_likelihood = -float(best.fun)
    if not math.isfinite(log_likelihood) or best.fun >= _BAD_DEVIANCE:
        return FailedFit(model=model, reason="likelihood is not finite at the optimum")
    if strict and not best.success:
        return FailedFit(model=model, reason=f"optimizer did not converge: {best.message}")

    q01, q10 = _rates_from_params(best.x, model)
    log_se = _log_rate_standard_errors(deviance, np.asarray(best.x, dtype=float), strict)
    if strict and not np.all(np.isfinite(log_se)):
        return FailedFit(model=model, reason="standard errors are not finite")
    se_params = np.exp(best.x) * log_se
    q01_se, q10_se = (se_params[0], se_params[0]) if model == EQUAL_RATES else (se_params[0], se_params[1])

    _, partial, messages = _prune(tree, states, q01, q10)
    node_likelihoods = _marginal_node_likelihoods(tree, _transition_matrices(tree.edge_length, q01, q10), partial, messages)

    return ConvergedFit(
        model=model,
        log_likelihood=log_likelihood,
        aic=-2.0 * log_likelihood + 2.0 * n_params,
        n_params=n_params,
        rates=(q01, q10),
        rates_se=(float(q01_se), float(q10_se)),
        node_likelihoods=node_likelihoods,
    )


def _rates_from_params(log_rates: np.ndarray, model: str) -> Tuple[float, float]:
    if model == EQUAL_RATES:
        q = math.exp(float(log_rates[0]))
        return q, q
    return math.exp(float(log_rates[0])), math.exp(float(log_rates[1]))


def _log_rate_standard_errors(
    deviance: Callable[[np.ndarray], float],
    x: np.ndarray,
    strict: bool,
) -> np.ndarray:
    hessian = _numerical_hessian(deviance, x)
    if strict:
        # Warnings from a non positive-definite Hessian propagate as errors.
        return np.sqrt(np.diag(np.linalg.inv(hessian)))
    try:
        with np.errstate(all="ignore"):
            return np.sqrt(np.diag(np.linalg.inv(hessian)))
    except np.linalg.LinAlgError:
        return np.full(x.shape[0], np.nan)


def _numerical_hessian(f: Callable[[np.ndarray], float], x: np.ndarray, step: float = _HESSIAN_STEP) -> np.ndarray:
    k = x.shape[0]
    hessian = np.empty((k, k), dtype=float)
    f0 = f(x)
    for i in range(k):
        up = x.copy()
        up[i] += step
        down = x.copy()
        down[i] -= step
        hessian[i, i] = (f(up) - 2.0 * f0 + f(down)) / step**2
        for j in range(i + 1, k):
            pp = x.copy()
            pp[i] += step
            pp[j] += step
            pm = x.copy()
            pm[i] += step
            pm[j] -= step
            mp = x.copy()
            mp[i] -= step
            mp[j] += step
            mm = x.copy()
            mm[i] -= step
            mm[j] -= step
            value = (f(pp) - f(pm) - f(mp) + f(mm)) / (4.0 * step**2)
            hessian[i, j] = value
            hessian[j, i] = value
    return hessian


def _transition_matrices(lengths: np.ndarray, q01: float, q10: float) -> np.ndarray:
    """Closed-form two-state transition probabilities, one 2x2 matrix per edge."""
    qsum = q01 + q10
    pi0 = q10 / qsum
    pi1 = q01 / qsum
    e = np.exp(-qsum * lengths)

    trans = np.empty((lengths.shape[0], 2, 2), dtype=float)
    trans[:, 0, 0] = pi0 + pi1 * e
    trans[:, 0, 1] = pi1 - pi1 * e
    trans[:, 1, 0] = pi0 - pi0 * e
    trans[:, 1, 1] = pi1 + pi0 * e
    return trans


def _prune(
    tree: PhyloTree,
    states: np.ndarray,
    q01: float,
    q10: float,
) -> Tuple[float, np.ndarray, np.ndarray]:
    """Felsenstein pruning with per-node rescaling and an equal-weight root prior.

    Returns the log-likelihood, the normalised conditional likelihoods per node,
    and the message each edge sends to its parent.
    """
    n_tips = tree.n_tips
    trans = _transition_matrices(tree.edge_length, q01, q10)

    partial = np.ones((tree.n_total, 2), dtype=float)
    partial[:n_tips] = 0.0
    partial[np.arange(n_tips), states] = 1.0
    messages = np.empty((tree.n_edges, 2), dtype=float)
    log_scale = 0.0

    for e in tree.postorder_edges():
        parent = int(tree.edge_parent[e])
        child = int(tree.edge_child[e])
        if child >= n_tips:
            norm = partial[child].sum()
            if norm <= 0.0:
                return float("-inf"), partial, messages
            partial[child] /= norm
            log_scale += math.log(norm)
        msg = trans[e] @ partial[child]
        messages[e] = msg
        partial[parent] *= msg

    root = tree.root
    norm = partial[root].sum()
    if norm <= 0.0:
        return float("-inf"), partial, messages
    partial[root] /= norm
    loglik = log_scale + math.log(0.5 * norm)
    return loglik, partial, messages


def _marginal_node_likelihoods(
    tree: PhyloTree,
    trans: np.ndarray,
    partial: np.ndarray,
    messages: np.ndarray,
) -> np.ndarray:
    """Marginal state probabilities at internal nodes (rows sum to 1)."""
    n_tips = tree.n_tips
    edges_by_parent: List[List[int]] = [[] for _ in range(tree.n_total)]
    for e in range(tree.n_edges):
        edges_by_parent[int(tree.edge_parent[e])].append(e)

    outside = np.full((tree.n_total, 2), 0.5, dtype=float)
    # Cladewise order sets each parent before its children.
    for e in range(tree.n_edges):
        parent = int(tree.edge_parent[e])
        child = int(tree.edge_child[e])
        above = outside[parent].copy()
        for sibling in edges_by_parent[parent]:
            if sibling != e:
                above *= messages[sibling]
        down = above @ trans[e]
        total = down.sum()
        outside[child] = down / total if total > 0.0 else (0.5, 0.5)

    joint = outside[n_tips:] * partial[n_tips:]
    totals = joint.sum(axis=1, keepdims=True)
    totals[totals <= 0.0] = 1.0
    return joint / totals


def _check_states(tree: PhyloTree, values: np.ndarray) -> np.ndarray:
    values = np.asarray(values, dtype=float).reshape(-1)
    if values.shape[0] != tree.n_tips:
        raise DimensionMismatchError(
            f"Trait vector has {values.shape[0]} values but the tree has {tree.n_tips} tips"
        )
    if not np.all((values == 0.0) | (values == 1.0)):
        bad = sorted({repr(float(v)) for v in values if v not in (0.0, 1.0)})
        raise InvalidTraitError(
            f"Discrete reconstruction requires binary 0/1 values; found {', '.join(bad[:6])}"
        )
    return values.astype(np.int64)
