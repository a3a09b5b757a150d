"""Error taxonomy for reconstruction inputs and fits."""

from __future__ import annotations

from typing import Sequence


class PhylogwasError(ValueError):
    """Base class for malformed-input and fitting errors."""


class InvalidTreeError(PhylogwasError):
    """Tree is unrooted, not fully bifurcating, or has unusable branch lengths."""


class DimensionMismatchError(PhylogwasError):
    """Trait matrix or state vector shape disagrees with the tree."""


class InvalidTraitError(PhylogwasError):
    """Trait values (or a threshold) fall outside the allowed range."""


class ModelFitError(PhylogwasError):
    """Neither candidate discrete model produced a usable fit."""


def preview(items: Sequence[object], limit: int = 6) -> str:
    shown = ", ".join(str(x) for x in items[:limit])
    return f"{shown}{' ...' if len(items) > limit else ''}"
