"""phylogwas: ancestral state reconstruction for phylogenetic bacterial GWAS."""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
import tomllib


def _read_local_version() -> str:
    """Fall back to the source checkout's pyproject.toml."""
    pyproject = Path(__file__).resolve().parent.parent / "pyproject.toml"
    data = tomllib.loads(pyproject.read_text(encoding="utf-8"))
    return str(data["project"]["version"])


try:
    __version__ = version("phylogwas")
except PackageNotFoundError:
    try:
        __version__ = _read_local_version()
    except Exception:
        __version__ = "0+unknown"

from .errors import (  # noqa: E402
    DimensionMismatchError,
    InvalidTraitError,
    InvalidTreeError,
    ModelFitError,
    PhylogwasError,
)
from .reconstruction import (  # noqa: E402
    AncestralReconstructions,
    ReconstructionResult,
    ancestral_reconstruction_by_ml,
    prepare_ancestral_reconstructions,
)
from .tree import PhyloTree, load_tree, parse_newick  # noqa: E402

__all__ = [
    "__version__",
    "AncestralReconstructions",
    "DimensionMismatchError",
    "InvalidTraitError",
    "InvalidTreeError",
    "ModelFitError",
    "PhyloTree",
    "PhylogwasError",
    "ReconstructionResult",
    "ancestral_reconstruction_by_ml",
    "load_tree",
    "parse_newick",
    "prepare_ancestral_reconstructions",
]
