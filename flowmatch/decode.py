"""Decoding of a solved flow into matched sets on the original dataset."""

from __future__ import annotations

import warnings
from dataclasses import dataclass, field

import numpy as np
import pandas as pd

from .edges import as_treatment
from .errors import ConfigurationError, Infeasible, SolverFailure
from .logging import get_logger
from .network import Network
from .solver import FlowSolution

logger = get_logger(__name__)

INFEASIBLE_MESSAGE = (
    "Matching is unsuccessful: increase caliper size and/or remove constraints."
)


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------


@dataclass
class MatchResult:
    """Outcome of one matching call.

    Attributes:
        feasible: True when a match satisfying every constraint was found.
            Compares equal to 1/0.
        data_with_matched_set_ind: The input dataset, same row order, with
            two appended columns: ``matched_set`` (nullable Int64; the
            sequential index 1..n_t of the treated unit the row is matched
            to, NA for unmatched controls) and ``distance`` (left-layer
            distance on matched control rows, NaN elsewhere). ``None`` when
            infeasible.
        matched_data_in_order: The same rows sorted by ``matched_set``
            ascending, the treated row first within each set, unmatched
            controls last. ``None`` when infeasible.
        matched_pairs: DataFrame with columns [treated_idx, control_idx,
            matched_set, distance]; index columns are positional row indices
            into the dataset. ``None`` when infeasible.
        total_cost: Objective value reported by the solver.
    """

    feasible: bool
    data_with_matched_set_ind: pd.DataFrame | None = None
    matched_data_in_order: pd.DataFrame | None = None
    matched_pairs: pd.DataFrame | None = field(default=None, repr=False)
    total_cost: int | None = None


def infeasible_result(infeasible: Infeasible) -> MatchResult:
    """Emit the user-facing diagnostic and return an empty result."""
    logger.info("Match infeasible: %s", infeasible.reason)
    warnings.warn(
        f"{INFEASIBLE_MESSAGE} ({infeasible.reason})",
        UserWarning,
        stacklevel=3,
    )
    return MatchResult(feasible=False)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def decode_flow(
    network: Network,
    solution: FlowSolution | Infeasible,
    dataset: pd.DataFrame,
    Z,
) -> MatchResult:
    """Map the flow on treated->control arcs back onto the dataset.

    Args:
        network: The network that was solved.
        solution: Solver output.
        dataset: Original data, one row per unit, same order as ``Z``.
        Z: Treatment indicator per row.

    Returns:
        A :class:`MatchResult`.

    Raises:
        ConfigurationError: If ``dataset``/``Z`` disagree with the network.
        SolverFailure: If the flow does not give every treated unit exactly
            ``controls_per_treated`` controls.
    """
    if isinstance(solution, Infeasible):
        return infeasible_result(solution)

    z = as_treatment(Z)
    if len(dataset) != len(z):
        raise ConfigurationError(
            f"dataset has {len(dataset)} rows but the treatment vector has {len(z)}."
        )
    treated_pos = np.flatnonzero(z == 1)
    control_pos = np.flatnonzero(z == 0)
    if (len(treated_pos), len(control_pos)) != (network.n_t, network.n_c):
        raise ConfigurationError(
            "Treatment vector does not match the network's treated/control counts."
        )

    n_t, m = network.n_t, network.controls_per_treated
    left_costs = network.left.arc_map()
    scale = network.left.scale

    matched_set = np.zeros(len(z), dtype=np.int64)
    distance = np.full(len(z), np.nan)
    matched_set[treated_pos] = np.arange(1, n_t + 1)
    counts = np.zeros(n_t, dtype=int)
    pairs: list[tuple[int, int, int, float]] = []

    for arc in network.pair_arcs():
        if solution.flow.get((arc.tail, arc.head), 0) <= 0:
            continue
        t, c = arc.tail, arc.head
        row = control_pos[c - n_t - 1]
        dist = left_costs[(t, c)] / scale
        matched_set[row] = t
        distance[row] = dist
        counts[t - 1] += 1
        pairs.append((int(treated_pos[t - 1]), int(row), t, dist))

    if np.any(counts != m):
        bad = int(np.flatnonzero(counts != m)[0] + 1)
        raise SolverFailure(
            f"Solver flow matches treated unit {bad} to {counts[bad - 1]} controls; "
            f"expected {m}."
        )

    out = dataset.copy()
    out["matched_set"] = pd.Series(matched_set, index=out.index).where(matched_set > 0).astype("Int64")
    out["distance"] = distance

    # NA sets sort last; treated rows lead their set
    set_key = np.where(matched_set > 0, matched_set, n_t + 1)
    order = np.lexsort((np.arange(len(z)), 1 - z, set_key))
    in_order = out.iloc[order]

    matched_pairs = pd.DataFrame(
        pairs, columns=["treated_idx", "control_idx", "matched_set", "distance"]
    ).sort_values(["matched_set", "control_idx"], ignore_index=True)

    logger.info(
        "Matched %d treated units to %d controls (total cost %d)",
        n_t, len(pairs), solution.cost,
    )
    return MatchResult(
        feasible=True,
        data_with_matched_set_ind=out,
        matched_data_in_order=in_order,
        matched_pairs=matched_pairs,
        total_cost=solution.cost,
    )
