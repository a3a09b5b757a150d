"""I/O and input-format checks for phenotype/genotype matrices."""

from __future__ import annotations

import csv
import json
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Sequence

import numpy as np

from .errors import DimensionMismatchError, InvalidTraitError, preview
from .tree import PhyloTree, validate_tree


_MISSING = {"", "NA", "N/A", "na", "n/a", "NaN", "nan"}
_SAMPLE_CANDIDATES = [
    "sample",
    "species",
    "taxon",
    "tip",
    "label",
    "name",
    "strain",
    "id",
]

DISCRETE = "discrete"
CONTINUOUS = "continuous"
TRAIT_TYPES = (DISCRETE, CONTINUOUS)


@dataclass(frozen=True)
class TraitMatrix:
    row_labels: List[str]
    column_names: List[str]
    values: np.ndarray

    @property
    def n_cols(self) -> int:
        return int(self.values.shape[1])

    def column(self, index: int) -> np.ndarray:
        return self.values[:, index]


def _normalize_header(h: str) -> str:
    return h.strip().lower()


def load_trait_matrix(path: str | Path, columns: Sequence[str] | None = None) -> TraitMatrix:
    """Load a sample-by-trait TSV; every non-sample column becomes a numeric trait column."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Trait TSV not found: {path}")

    with path.open("r", encoding="utf-8", newline="") as handle:
        reader = csv.DictReader(handle, delimiter="\t")
        if reader.fieldnames is None:
            raise ValueError(f"Trait TSV has no header: {path}")

        headers = [h.strip() for h in reader.fieldnames]
        reader.fieldnames = headers
        header_norm = {_normalize_header(h): h for h in headers}

        sample_col = None
        for key in _SAMPLE_CANDIDATES:
            if key in header_norm:
                sample_col = header_norm[key]
                break
        if sample_col is None:
            sample_col = headers[0]

        rows = list(reader)

    trait_cols = [h for h in headers if h != sample_col and h]
    if columns is not None:
        unknown = [c for c in columns if c not in trait_cols]
        if unknown:
            raise ValueError(
                f"Columns not found in {path}: {preview(unknown)}; available: {preview(trait_cols)}"
            )
        trait_cols = list(columns)
    if not trait_cols:
        raise ValueError(f"Trait TSV has no trait columns: {path}")

    labels: List[str] = []
    seen: Dict[str, int] = {}
    values = np.empty((len(rows), len(trait_cols)), dtype=float)
    for r, row in enumerate(rows):
        line_no = r + 2
        sample = (row.get(sample_col) or "").strip()
        if not sample:
            raise ValueError(f"Empty sample value at {path}:{line_no}")
        if sample in seen:
            raise ValueError(
                f"Duplicate sample '{sample}' at {path}:{line_no} (first seen at line {seen[sample]})"
            )
        seen[sample] = line_no
        labels.append(sample)

        for c, col in enumerate(trait_cols):
            raw = (row.get(col) or "").strip()
            if raw in _MISSING:
                raise ValueError(
                    f"Missing value at {path}:{line_no} for sample '{sample}' in column '{col}'"
                )
            try:
                values[r, c] = float(raw)
            except ValueError as exc:
                raise ValueError(
                    f"Non-numeric value '{raw}' at {path}:{line_no} in column '{col}'"
                ) from exc

    return TraitMatrix(row_labels=labels, column_names=trait_cols, values=values)


def align_to_tree(matrix: TraitMatrix, tree: PhyloTree) -> TraitMatrix:
    """Reorder matrix rows to the tree's tip order."""
    tree_samples = set(tree.tip_labels)
    matrix_samples = set(matrix.row_labels)

    missing = sorted(tree_samples - matrix_samples)
    extra = sorted(matrix_samples - tree_samples)
    if missing or extra:
        msg = ["Sample mismatch between trait matrix and tree tips."]
        if missing:
            msg.append(f"Missing in trait matrix ({len(missing)}): {preview(missing, 8)}")
        if extra:
            msg.append(f"Extra in trait matrix ({len(extra)}): {preview(extra, 8)}")
        raise DimensionMismatchError(" ".join(msg))

    row_by_label = {label: i for i, label in enumerate(matrix.row_labels)}
    order = [row_by_label[label] for label in tree.tip_labels]
    return TraitMatrix(
        row_labels=list(tree.tip_labels),
        column_names=list(matrix.column_names),
        values=matrix.values[order, :],
    )


def is_binary(values: np.ndarray) -> bool:
    values = np.asarray(values, dtype=float)
    return bool(np.all((values == 0.0) | (values == 1.0)))


def detect_trait_type(values: np.ndarray) -> str:
    """Classify a phenotype as discrete (strictly 0/1) or continuous."""
    return DISCRETE if is_binary(values) else CONTINUOUS


def check_trait_type(trait_type: str) -> None:
    if trait_type not in TRAIT_TYPES:
        raise ValueError(f"Trait type must be one of {TRAIT_TYPES}; got '{trait_type}'")


def check_matrix_shape(
    values: np.ndarray,
    n_tips: int,
    name: str,
    exact_cols: int | None = None,
    min_cols: int = 1,
) -> None:
    if values.ndim != 2:
        raise DimensionMismatchError(f"{name} matrix must be 2-dimensional; got {values.ndim} dims")
    n_rows, n_cols = values.shape
    if n_rows != n_tips:
        raise DimensionMismatchError(
            f"{name} matrix has {n_rows} rows but the tree has {n_tips} tips"
        )
    if exact_cols is not None and n_cols != exact_cols:
        raise DimensionMismatchError(f"{name} matrix must have exactly {exact_cols} column(s); got {n_cols}")
    if n_cols < min_cols:
        raise DimensionMismatchError(f"{name} matrix must have at least {min_cols} column(s); got {n_cols}")


def check_finite(values: np.ndarray, name: str) -> None:
    if not np.all(np.isfinite(values)):
        bad = np.argwhere(~np.isfinite(values))
        cells = [f"({int(r)},{int(c)})" for r, c in bad]
        raise InvalidTraitError(f"{name} matrix contains NA or infinite values at {preview(cells)}")


def check_binary(values: np.ndarray, name: str) -> None:
    if not is_binary(values):
        raise InvalidTraitError(f"{name} values must be binary (0/1)")


def check_input_format(
    tree: PhyloTree,
    phenotype: TraitMatrix,
    genotype: TraitMatrix,
    min_tips: int = 7,
) -> str:
    """Validate tree-aligned inputs and return the phenotype's trait type."""
    validate_tree(tree)
    if tree.n_tips < min_tips:
        raise DimensionMismatchError(f"Tree must have at least {min_tips} tips; found {tree.n_tips}")

    check_matrix_shape(phenotype.values, tree.n_tips, "Phenotype", exact_cols=1)
    check_matrix_shape(genotype.values, tree.n_tips, "Genotype", min_cols=1)
    for matrix, name in ((phenotype, "Phenotype"), (genotype, "Genotype")):
        if list(matrix.row_labels) != list(tree.tip_labels):
            raise DimensionMismatchError(f"{name} rows are not in tree tip order")
        check_finite(matrix.values, name)
    check_binary(genotype.values, "Genotype")

    return detect_trait_type(phenotype.values)


def format_value(value: float) -> str:
    if math.isfinite(value) and float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def write_tsv(path: str | Path, rows: Sequence[Dict[str, object]], fieldnames: Sequence[str]) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.DictWriter(handle, fieldnames=fieldnames, delimiter="\t", extrasaction="ignore")
        writer.writeheader()
        for row in rows:
            writer.writerow(row)


def write_json(path: str | Path, obj: object) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        json.dump(obj, handle, ensure_ascii=True, indent=2, sort_keys=True)
        handle.write("\n")
