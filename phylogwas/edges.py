"""Edge-indexed views of node reconstructions and transition detection."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .errors import DimensionMismatchError, InvalidTraitError
from .tree import PhyloTree

# Direction codes; state 0 is always the low (absent) state.
DECREASE = -1
NO_CHANGE = 0
INCREASE = 1


@dataclass(frozen=True)
class TransitionRecord:
    transition: np.ndarray
    direction: np.ndarray

    @property
    def n_transitions(self) -> int:
        return int(self.transition.sum())


def convert_to_edge_matrix(tree: PhyloTree, tip_and_node_states: np.ndarray) -> np.ndarray:
    """One row per edge in native edge order: (parent value, child value)."""
    values = np.asarray(tip_and_node_states).reshape(-1)
    if values.shape[0] != tree.n_total:
        raise DimensionMismatchError(
            f"State vector has {values.shape[0]} entries; expected {tree.n_total} "
            f"({tree.n_tips} tips + {tree.n_nodes} internal nodes)"
        )
    return np.column_stack([values[tree.edge_parent], values[tree.edge_child]])


def identify_transition_edges(
    tree: PhyloTree,
    tip_values: np.ndarray,
    node_states: np.ndarray,
) -> TransitionRecord:
    """Flag edges whose parent and child states differ and classify the direction."""
    tips = np.asarray(tip_values, dtype=float).reshape(-1)
    nodes = np.asarray(node_states, dtype=float).reshape(-1)
    if tips.shape[0] != tree.n_tips:
        raise DimensionMismatchError(f"Got {tips.shape[0]} tip values for {tree.n_tips} tips")
    if nodes.shape[0] != tree.n_nodes:
        raise DimensionMismatchError(f"Got {nodes.shape[0]} node states for {tree.n_nodes} internal nodes")

    edge_values = convert_to_edge_matrix(tree, np.concatenate([tips, nodes]))
    if not np.all((edge_values == 0.0) | (edge_values == 1.0)):
        raise InvalidTraitError("Transition detection requires binary 0/1 states")

    parent = edge_values[:, 0]
    child = edge_values[:, 1]
    transition = parent != child

    direction = np.full(tree.n_edges, NO_CHANGE, dtype=np.int8)
    direction[(parent == 0.0) & (child == 1.0)] = INCREASE
    direction[(parent == 1.0) & (child == 0.0)] = DECREASE
    return TransitionRecord(transition=transition, direction=direction)
