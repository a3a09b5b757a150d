"""Field names for reconstruction output tables."""

from __future__ import annotations

from typing import List


def output_fieldnames(table: str) -> List[str]:
    if table == "node_states":
        return [
            "trait",
            "trait_type",
            "node_id",
            "label",
            "kind",
            "state",
            "confidence",
        ]
    if table == "edge_transitions":
        return [
            "trait",
            "edge_index",
            "parent_id",
            "child_id",
            "parent_state",
            "child_state",
            "transition",
            "direction",
        ]
    if table == "model_selection":
        return [
            "trait",
            "selected_model",
            "er_log_likelihood",
            "er_aic",
            "er_rate",
            "ard_log_likelihood",
            "ard_aic",
            "ard_q01",
            "ard_q10",
            "ard_status",
            "lrt_p_value",
            "aic_difference",
            "n_transitions",
            "n_low_confidence_nodes",
        ]
    raise ValueError(f"Unknown output table '{table}'")
