"""Per-trait reconstruction and the phenotype/genotype orchestrator."""

from __future__ import annotations

import multiprocessing as mp
import os
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterator, List, Optional, Tuple, Union

import numpy as np

from .confidence import ML_CONFIDENCE_THRESHOLD, check_threshold, continuous_confidence, discrete_confidence
from .continuous import ContinuousReconstruction, reconstruct_continuous
from .discrete import DEFAULT_SEED, DiscreteReconstruction, reconstruct_discrete
from .edges import TransitionRecord, convert_to_edge_matrix, identify_transition_edges
from .errors import DimensionMismatchError
from .io import CONTINUOUS, DISCRETE, check_binary, check_finite, check_matrix_shape, check_trait_type
from .progress import log_progress
from .tree import PhyloTree, validate_tree


@dataclass(frozen=True)
class ReconstructionResult:
    node_states: np.ndarray
    confidence: np.ndarray
    edge_values: np.ndarray
    tip_and_node_states: np.ndarray
    trait_type: str
    fit: Union[ContinuousReconstruction, DiscreteReconstruction]

    @property
    def model(self) -> str:
        return self.fit.model


@dataclass(frozen=True)
class AncestralReconstructions:
    phenotype: ReconstructionResult
    genotypes: List[ReconstructionResult]
    genotype_transitions: List[TransitionRecord]


def ancestral_reconstruction_by_ml(
    tree: PhyloTree,
    matrix: np.ndarray,
    column: int,
    trait_type: str,
    *,
    seed: int = DEFAULT_SEED,
    threshold: float = ML_CONFIDENCE_THRESHOLD,
) -> ReconstructionResult:
    """Reconstruct one matrix column and attach confidence and the edge matrix."""
    check_trait_type(trait_type)
    check_threshold(threshold)
    values = np.asarray(matrix, dtype=float)
    if values.ndim != 2:
        raise DimensionMismatchError(f"Trait matrix must be 2-dimensional; got {values.ndim} dims")
    if not 0 <= column < values.shape[1]:
        raise DimensionMismatchError(
            f"Column index {column} out of range for matrix with {values.shape[1]} column(s)"
        )
    if values.shape[0] != tree.n_tips:
        raise DimensionMismatchError(
            f"Trait matrix has {values.shape[0]} rows but the tree has {tree.n_tips} tips"
        )
    trait = values[:, column]

    fit: Union[ContinuousReconstruction, DiscreteReconstruction]
    if trait_type == CONTINUOUS:
        fit = reconstruct_continuous(tree, trait)
        confidence = continuous_confidence(fit.tip_and_node_states)
    else:
        fit = reconstruct_discrete(tree, trait, seed=seed)
        confidence = discrete_confidence(fit.node_likelihoods, tree.n_tips, threshold)

    return ReconstructionResult(
        node_states=fit.node_states,
        confidence=confidence,
        edge_values=convert_to_edge_matrix(tree, fit.tip_and_node_states),
        tip_and_node_states=fit.tip_and_node_states,
        trait_type=trait_type,
        fit=fit,
    )


def prepare_ancestral_reconstructions(
    tree: PhyloTree,
    phenotype: np.ndarray,
    genotype: np.ndarray,
    trait_type: str,
    *,
    seed: int = DEFAULT_SEED,
    threshold: float = ML_CONFIDENCE_THRESHOLD,
    jobs: int = 1,
    progress: Optional[Callable[[str], None]] = log_progress,
) -> AncestralReconstructions:
    """Reconstruct the phenotype once and every genotype column as a discrete trait.

    Any failing column aborts the whole run. With ``jobs > 1`` genotype columns
    are fitted in worker processes; each column seeds its own generator from
    ``seed``, so results match a sequential run.
    """
    validate_tree(tree)
    check_trait_type(trait_type)
    check_threshold(threshold)
    pheno = np.asarray(phenotype, dtype=float)
    geno = np.asarray(genotype, dtype=float)
    check_matrix_shape(pheno, tree.n_tips, "Phenotype", exact_cols=1)
    check_matrix_shape(geno, tree.n_tips, "Genotype", min_cols=1)
    check_finite(pheno, "Phenotype")
    check_finite(geno, "Genotype")
    check_binary(geno, "Genotype")
    workers = effective_jobs(jobs)

    phenotype_result = ancestral_reconstruction_by_ml(
        tree, pheno, 0, trait_type, seed=seed, threshold=threshold
    )

    n_geno = geno.shape[1]
    marks = _progress_marks(n_geno)
    context = _build_worker_context(tree=tree, genotype=geno, seed=seed, threshold=threshold)

    genotypes: List[ReconstructionResult] = []
    transitions: List[TransitionRecord] = []
    for index, result, record in _reconstruct_genotypes(list(range(n_geno)), workers, context):
        genotypes.append(result)
        transitions.append(record)
        if progress is not None:
            for pct in marks.get(index + 1, []):
                progress(f"Ancestral reconstruction {pct}% complete: {datetime.now():%Y-%m-%d %H:%M:%S}")

    return AncestralReconstructions(
        phenotype=phenotype_result,
        genotypes=genotypes,
        genotype_transitions=transitions,
    )


def effective_jobs(raw_jobs: int) -> int:
    if raw_jobs < 0:
        raise ValueError("jobs must be >= 0")
    if raw_jobs == 0:
        return os.cpu_count() or 1
    return raw_jobs


def _progress_marks(n_columns: int) -> Dict[int, List[int]]:
    marks: Dict[int, List[int]] = {}
    for pct, mark in ((25, n_columns // 4), (50, n_columns // 2), (75, (n_columns * 3) // 4)):
        if mark > 0:
            marks.setdefault(mark, []).append(pct)
    return marks


_WORKER_CONTEXT: Dict[str, object] | None = None


def _build_worker_context(
    *,
    tree: PhyloTree,
    genotype: np.ndarray,
    seed: int,
    threshold: float,
) -> Dict[str, object]:
    return {
        "tree": tree,
        "genotype": genotype,
        "seed": seed,
        "threshold": threshold,
    }


def _init_worker(context: Dict[str, object]) -> None:
    global _WORKER_CONTEXT
    _WORKER_CONTEXT = context


def _reconstruct_column_with_context(
    index: int,
    context: Dict[str, object],
) -> Tuple[int, ReconstructionResult, TransitionRecord]:
    tree = context["tree"]
    genotype = context["genotype"]
    result = ancestral_reconstruction_by_ml(
        tree,
        genotype,
        index,
        DISCRETE,
        seed=int(context["seed"]),
        threshold=float(context["threshold"]),
    )
    record = identify_transition_edges(tree, genotype[:, index], result.node_states)
    return index, result, record


def _worker_reconstruct_column(index: int) -> Tuple[int, ReconstructionResult, TransitionRecord]:
    if _WORKER_CONTEXT is None:
        raise RuntimeError("Worker context is not initialized")
    return _reconstruct_column_with_context(index, _WORKER_CONTEXT)


def _reconstruct_genotypes(
    indices: List[int],
    jobs: int,
    context: Dict[str, object],
) -> Iterator[Tuple[int, ReconstructionResult, TransitionRecord]]:
    """Yield per-column results in column order as each column finishes."""
    if jobs <= 1 or len(indices) <= 1:
        for index in indices:
            yield _reconstruct_column_with_context(index, context)
        return

    chunksize = max(1, len(indices) // (jobs * 4))
    executor: Optional[ProcessPoolExecutor] = None
    try:
        executor = ProcessPoolExecutor(
            max_workers=jobs,
            mp_context=mp.get_context("fork") if os.name == "posix" else None,
            initializer=_init_worker,
            initargs=(context,),
        )
        results = executor.map(_worker_reconstruct_column, indices, chunksize=chunksize)
    except (PermissionError, OSError):
        if executor is not None:
            executor.shutdown(cancel_futures=True)
        # Warning filters are process-wide, so threads are not an option.
        for index in indices:
            yield _reconstruct_column_with_context(index, context)
        return

    with executor:
        yield from results
