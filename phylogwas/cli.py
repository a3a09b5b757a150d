"""Command-line entrypoint for phylogwas."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Dict, List, Optional

from . import __version__
from .confidence import ML_CONFIDENCE_THRESHOLD
from .discrete import ConvergedFit, DiscreteReconstruction
from .edges import TransitionRecord, identify_transition_edges
from .io import (
    CONTINUOUS,
    DISCRETE,
    TraitMatrix,
    align_to_tree,
    check_input_format,
    format_value,
    load_trait_matrix,
    write_json,
    write_tsv,
)
from .progress import log_progress, log_warning
from .reconstruction import ReconstructionResult, effective_jobs, prepare_ancestral_reconstructions
from .report import output_fieldnames
from .tree import PhyloTree, load_tree


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="phylogwas",
        description=(
            "Ancestral state reconstruction of a phenotype and binary genotypes "
            "on a rooted phylogeny, with per-edge genotype transitions"
        ),
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument("--tree", default=None, help="Rooted, bifurcating tree (Newick or NEXUS)")
    parser.add_argument(
        "--phenotype",
        default=None,
        help="Phenotype TSV: one sample column plus the phenotype column",
    )
    parser.add_argument(
        "--phenotype-column",
        default=None,
        help="Phenotype column name; omitted requires the TSV to hold exactly one trait column",
    )
    parser.add_argument(
        "--genotype",
        default=None,
        help="Genotype TSV: one sample column plus one binary (0/1) column per locus",
    )
    parser.add_argument(
        "--trait-type",
        choices=["auto", DISCRETE, CONTINUOUS],
        default="auto",
        help="Phenotype type; auto treats strictly 0/1 phenotypes as discrete",
    )
    parser.add_argument(
        "--confidence-threshold",
        type=float,
        default=ML_CONFIDENCE_THRESHOLD,
        help="Minimum best-state likelihood for a high-confidence internal node",
    )
    parser.add_argument("--seed", type=int, default=1, help="Seed for discrete model fitting")
    parser.add_argument(
        "--jobs",
        type=int,
        default=1,
        help="Number of worker processes for genotype columns (1 = sequential, 0 = auto)",
    )
    parser.add_argument("--min-tips", type=int, default=7, help="Minimum number of tree tips")
    parser.add_argument("--out-prefix", default="phylogwas_results", help="Output path prefix")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    return parser


def _validate_args(args: argparse.Namespace) -> None:
    if hasattr(args, "tree") and not args.tree:
        raise ValueError("--tree is required")
    if hasattr(args, "phenotype") and not args.phenotype:
        raise ValueError("--phenotype is required")
    if hasattr(args, "genotype") and not args.genotype:
        raise ValueError("--genotype is required")

    if args.confidence_threshold <= 0 or args.confidence_threshold >= 1:
        raise ValueError("--confidence-threshold must be in (0, 1)")
    if getattr(args, "jobs", 1) < 0:
        raise ValueError("--jobs must be >= 0")
    if getattr(args, "min_tips", 7) < 2:
        raise ValueError("--min-tips must be >= 2")


def _load_phenotype(path: Path, column: Optional[str]) -> TraitMatrix:
    matrix = load_trait_matrix(path, [column] if column else None)
    if matrix.n_cols != 1:
        raise ValueError(
            f"Phenotype TSV has {matrix.n_cols} trait columns ({', '.join(matrix.column_names)}); "
            "provide --phenotype-column"
        )
    return matrix


def _node_rows(tree: PhyloTree, trait: str, result: ReconstructionResult) -> List[Dict[str, object]]:
    rows: List[Dict[str, object]] = []
    for node_id in range(tree.n_total):
        rows.append(
            {
                "trait": trait,
                "trait_type": result.trait_type,
                "node_id": node_id,
                "label": tree.label(node_id),
                "kind": "tip" if tree.is_tip(node_id) else "internal",
                "state": format_value(float(result.tip_and_node_states[node_id])),
                "confidence": int(result.confidence[node_id]),
            }
        )
    return rows


def _edge_rows(
    tree: PhyloTree,
    trait: str,
    result: ReconstructionResult,
    record: TransitionRecord,
) -> List[Dict[str, object]]:
    rows: List[Dict[str, object]] = []
    for e in range(tree.n_edges):
        rows.append(
            {
                "trait": trait,
                "edge_index": e,
                "parent_id": int(tree.edge_parent[e]),
                "child_id": int(tree.edge_child[e]),
                "parent_state": format_value(float(result.edge_values[e, 0])),
                "child_state": format_value(float(result.edge_values[e, 1])),
                "transition": int(record.transition[e]),
                "direction": int(record.direction[e]),
            }
        )
    return rows


def _model_selection_row(
    trait: str,
    n_tips: int,
    result: ReconstructionResult,
    record: TransitionRecord,
) -> Dict[str, object]:
    fit = result.fit
    if not isinstance(fit, DiscreteReconstruction):
        raise TypeError("Model selection rows require a discrete reconstruction")
    selection = fit.selection
    er = selection.equal_rates
    ard = selection.all_rates_different

    row: Dict[str, object] = {
        "trait": trait,
        "selected_model": selection.model,
        "er_log_likelihood": None,
        "er_aic": None,
        "er_rate": None,
        "ard_log_likelihood": None,
        "ard_aic": None,
        "ard_q01": None,
        "ard_q10": None,
        "ard_status": "converged",
        "lrt_p_value": selection.p_value,
        "aic_difference": selection.aic_difference,
        "n_transitions": record.n_transitions,
        "n_low_confidence_nodes": int((result.confidence[n_tips:] == 0).sum()),
    }
    if isinstance(er, ConvergedFit):
        row.update(er_log_likelihood=er.log_likelihood, er_aic=er.aic, er_rate=er.rates[0])
    if isinstance(ard, ConvergedFit):
        row.update(
            ard_log_likelihood=ard.log_likelihood,
            ard_aic=ard.aic,
            ard_q01=ard.rates[0],
            ard_q10=ard.rates[1],
        )
    else:
        row["ard_status"] = f"failed: {ard.reason}"
    return row


def run(args: argparse.Namespace) -> int:
    log_progress("[1/4] Validating arguments and inputs")
    _validate_args(args)
    jobs = effective_jobs(getattr(args, "jobs", 1))

    tree = load_tree(args.tree)
    phenotype = align_to_tree(_load_phenotype(Path(args.phenotype), args.phenotype_column), tree)
    genotype = align_to_tree(load_trait_matrix(args.genotype), tree)
    detected = check_input_format(tree, phenotype, genotype, min_tips=args.min_tips)

    trait_type = detected if args.trait_type == "auto" else args.trait_type
    if args.trait_type == CONTINUOUS and detected == DISCRETE:
        log_warning("Phenotype is binary but --trait-type continuous was requested; using Brownian motion")
    trait_source = "auto" if args.trait_type == "auto" else "manual"

    log_progress(
        f"[2/4] Reconstructing {phenotype.column_names[0]} ({trait_type}) and "
        f"{genotype.n_cols} genotype(s) on {tree.n_tips} tips (jobs={jobs})"
    )
    recon = prepare_ancestral_reconstructions(
        tree,
        phenotype.values,
        genotype.values,
        trait_type,
        seed=args.seed,
        threshold=args.confidence_threshold,
        jobs=jobs,
    )

    pheno_name = phenotype.column_names[0]
    n_low = int((recon.phenotype.confidence[tree.n_tips :] == 0).sum())
    if n_low:
        log_warning(
            f"Phenotype reconstruction has {n_low} low-confidence internal node(s) "
            f"(best-state likelihood < {args.confidence_threshold})"
        )

    log_progress("[3/4] Writing result tables")
    node_rows = _node_rows(tree, pheno_name, recon.phenotype)
    edge_rows: List[Dict[str, object]] = []
    model_rows: List[Dict[str, object]] = []

    if trait_type == DISCRETE:
        pheno_record = identify_transition_edges(
            tree, phenotype.values[:, 0], recon.phenotype.node_states
        )
        edge_rows.extend(_edge_rows(tree, pheno_name, recon.phenotype, pheno_record))
        model_rows.append(_model_selection_row(pheno_name, tree.n_tips, recon.phenotype, pheno_record))

    for name, result, record in zip(genotype.column_names, recon.genotypes, recon.genotype_transitions):
        node_rows.extend(_node_rows(tree, name, result))
        edge_rows.extend(_edge_rows(tree, name, result, record))
        model_rows.append(_model_selection_row(name, tree.n_tips, result, record))

    out_prefix = Path(args.out_prefix)
    out_nodes = Path(str(out_prefix) + ".node_states.tsv")
    out_edges = Path(str(out_prefix) + ".edge_transitions.tsv")
    out_models = Path(str(out_prefix) + ".model_selection.tsv")
    out_json = Path(str(out_prefix) + ".run_metadata.json")

    write_tsv(out_nodes, node_rows, output_fieldnames("node_states"))
    write_tsv(out_edges, edge_rows, output_fieldnames("edge_transitions"))
    write_tsv(out_models, model_rows, output_fieldnames("model_selection"))

    n_ard = sum(1 for r in recon.genotypes if r.model == "ARD")
    metadata = {
        "tool": "phylogwas",
        "version": __version__,
        "inputs": {
            "tree": str(args.tree),
            "phenotype": str(args.phenotype),
            "genotype": str(args.genotype),
        },
        "parameters": {
            "trait_type": trait_type,
            "trait_type_source": trait_source,
            "phenotype_column": pheno_name,
            "confidence_threshold": args.confidence_threshold,
            "seed": args.seed,
            "min_tips": args.min_tips,
            "jobs_requested": args.jobs,
            "jobs_effective": jobs,
        },
        "tree": {
            "n_tips": tree.n_tips,
            "n_internal_nodes": tree.n_nodes,
            "n_edges": tree.n_edges,
        },
        "phenotype": {
            "model": recon.phenotype.model,
            "n_low_confidence_nodes": n_low,
        },
        "results": {
            "n_genotypes": genotype.n_cols,
            "n_genotypes_ard": n_ard,
            "n_genotypes_er": genotype.n_cols - n_ard,
            "n_genotypes_with_transitions": sum(
                1 for r in recon.genotype_transitions if r.n_transitions > 0
            ),
            "output_node_states_tsv": str(out_nodes),
            "output_edge_transitions_tsv": str(out_edges),
            "output_model_selection_tsv": str(out_models),
            "output_metadata_json": str(out_json),
        },
    }
    write_json(out_json, metadata)
    log_progress("[4/4] Run complete; outputs were written successfully")

    print(f"Wrote node states: {out_nodes}")
    print(f"Wrote edge transitions: {out_edges}")
    print(f"Wrote model selection: {out_models}")
    print(f"Wrote metadata: {out_json}")
    print(f"Genotypes reconstructed: {genotype.n_cols}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return run(args)
    except Exception as exc:  # pragma: no cover - top-level UX
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
