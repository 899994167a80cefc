"""Assembly of the two-criteria minimum-cost flow network.

Node layout (ids are consecutive integers)::

    0                      source
    1 .. n_t               treated units
    n_t+1 .. n_t+n_c       controls
    n_t+n_c+1 ..           fine-balance level nodes, then the overflow node
    last                   sink

The source ships ``n_t * m`` units (``m`` controls per treated unit). Each
treated node forwards exactly ``m`` units over treated->control pair arcs,
and every control absorbs at most one unit on its way to the sink, directly
or through its fine-balance level node.

Pair-arc costs merge two edge lists: the left list governs who is paired
with whom, the right list is scaled by ``lam`` and added on top so the
solver also balances the second criterion.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Hashable, Sequence

import numpy as np
import pandas as pd

from .config import MATCH_CONFIG, MatchConfig
from .edges import EdgeList, as_treatment
from .errors import ConfigurationError, Infeasible
from .logging import get_logger

logger = get_logger(__name__)

SOURCE = 0


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


@dataclass
class Arc:
    """Directed arc with integer cost, capacity and lower bound."""

    tail: int
    head: int
    cost: int
    capacity: int
    lower: int = 0
    kind: str = "pair"


@dataclass
class FineBalanceSpec:
    """Nominal levels whose treated distribution the matched controls should reproduce.

    Attributes:
        treatment: Treatment indicator per unit (dataset order).
        levels: One hashable level per unit (dataset order). Joint levels of
            several covariates are tuples.
        exact: If True, every level must receive exactly its treated count
            of controls, otherwise the match is infeasible. If False
            (default), surplus controls in a level are allowed at
            ``penalty`` each (near-fine balance).
        penalty: Cost per surplus control. ``None`` derives one large enough
            to dominate any difference in pairing cost.
    """

    treatment: Sequence[int] | np.ndarray
    levels: Sequence[Hashable]
    exact: bool = False
    penalty: float | None = None

    def __post_init__(self) -> None:
        self.treatment = as_treatment(self.treatment)
        levels = [tuple(v) if isinstance(v, list) else v for v in self.levels]
        if len(levels) != len(self.treatment):
            raise ConfigurationError(
                f"Fine-balance levels have {len(levels)} entries but the "
                f"treatment vector has {len(self.treatment)}."
            )
        self.levels = levels
        if self.penalty is not None and self.penalty < 0:
            raise ConfigurationError("Fine-balance penalty must be non-negative.")

    @classmethod
    def from_frame(
        cls,
        df: pd.DataFrame,
        treatment,
        columns: str | Sequence[str],
        exact: bool = False,
        penalty: float | None = None,
    ) -> "FineBalanceSpec":
        """Build a spec from one or several nominal columns of ``df``.

        Args:
            df: Dataset with one row per unit.
            treatment: Column name of the treatment indicator, or the vector.
            columns: Column(s) whose (joint) levels are balanced.
            exact: See class docstring.
            penalty: See class docstring.
        """
        if isinstance(columns, str):
            columns = [columns]
        missing = [c for c in columns if c not in df.columns]
        if missing:
            raise ConfigurationError(f"Fine-balance columns not found: {missing}.")
        if isinstance(treatment, str):
            treatment = df[treatment].to_numpy()
        if len(columns) == 1:
            levels = df[columns[0]].tolist()
        else:
            levels = list(df[list(columns)].itertuples(index=False, name=None))
        return cls(treatment=treatment, levels=levels, exact=exact, penalty=penalty)

    def split(self) -> tuple[list[Hashable], list[Hashable]]:
        """Levels of the treated units and of the controls, each in node order."""
        z = self.treatment
        treated = [lv for lv, t in zip(self.levels, z) if t == 1]
        control = [lv for lv, t in zip(self.levels, z) if t == 0]
        return treated, control


@dataclass
class Network:
    """Flow network handed to a minimum-cost flow solver.

    ``supply`` maps node id to net supply (positive) or demand (negative);
    nodes absent from it are transshipment nodes.
    """

    n_t: int
    n_c: int
    controls_per_treated: int
    n_nodes: int
    arcs: list[Arc]
    supply: dict[int, int]
    left: EdgeList
    right: EdgeList | None = None
    lam: float = 0.0
    level_nodes: dict[Hashable, int] = field(default_factory=dict)
    overflow_node: int | None = None

    @property
    def source(self) -> int:
        return SOURCE

    @property
    def sink(self) -> int:
        return self.n_nodes - 1

    @property
    def total_supply(self) -> int:
        return self.n_t * self.controls_per_treated

    def pair_arcs(self) -> list[Arc]:
        return [a for a in self.arcs if a.kind == "pair"]

    def to_frame(self) -> pd.DataFrame:
        """One row per arc: tail, head, cost, capacity, lower, kind."""
        return pd.DataFrame(
            [(a.tail, a.head, a.cost, a.capacity, a.lower, a.kind) for a in self.arcs],
            columns=["tail", "head", "cost", "capacity", "lower", "kind"],
        )


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _merge_pair_costs(
    left: EdgeList,
    right: EdgeList | None,
    lam: float,
    overflow: bool,
) -> dict[tuple[int, int], int]:
    """Combine the two layers into one cost per (treated, control) arc.

    Without ``overflow`` an arc must be present in both layers. With
    ``overflow`` the left layer alone decides which arcs exist; arcs the
    right layer lacks keep their left cost.

    An arc held only by the right layer is dropped in both modes. It never
    falls back to its right cost, because the left layer carries the pairing
    distance that is reported on matched rows and an arc without one has no
    distance to report.
    """
    left_map = left.arc_map()
    if right is None:
        return left_map

    right_map = right.arc_map()
    merged: dict[tuple[int, int], int] = {}
    for arc, cost in left_map.items():
        if arc in right_map:
            merged[arc] = cost + int(round(lam * right_map[arc]))
        elif overflow:
            merged[arc] = cost
    logger.debug(
        "Merged %d left and %d right arcs into %d (overflow=%s)",
        len(left_map), len(right_map), len(merged), overflow,
    )
    return merged


def _include_mask(include, n_c: int) -> np.ndarray | None:
    if include is None:
        return None
    mask = np.asarray(include).ravel()
    if len(mask) != n_c:
        raise ConfigurationError(
            f"include must have one entry per control ({n_c}); got {len(mask)}."
        )
    try:
        return mask.astype(bool)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError("include must be a boolean vector.") from exc


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def assemble_network(
    left: EdgeList,
    right: EdgeList | None = None,
    lam: float = 1.0,
    fine_balance: FineBalanceSpec | None = None,
    controls_per_treated: int = 1,
    include=None,
    overflow: bool = False,
    config: MatchConfig | None = None,
) -> Network | Infeasible:
    """Combine one or two edge lists into a single flow network.

    Args:
        left: Edge list that governs pairing (its distances are reported
            back on the matched rows).
        right: Optional edge list for the balance criterion. Its costs are
            multiplied by ``lam`` and added to the matching left arc.
        lam: Weight of the right layer.
        fine_balance: Optional :class:`FineBalanceSpec`.
        controls_per_treated: Number of controls ``m`` matched to each
            treated unit.
        include: Optional boolean vector, one entry per control in node
            order; flagged controls must appear in the match.
        overflow: If True, the right layer never removes arcs, so it cannot
            make the match infeasible; it only adds cost where it has arcs.
        config: Numeric configuration; defaults to ``MATCH_CONFIG``.

    Returns:
        A :class:`Network`, or :class:`Infeasible` when a structural check
        already shows no feasible flow exists.

    Raises:
        ConfigurationError: On inconsistent layers or malformed options.
    """
    config = config or MATCH_CONFIG
    m = int(controls_per_treated)
    if m < 1:
        raise ConfigurationError(f"controls_per_treated must be >= 1; got {controls_per_treated}.")
    if lam < 0:
        raise ConfigurationError(f"lam must be non-negative; got {lam}.")
    if right is not None and (right.n_t, right.n_c) != (left.n_t, left.n_c):
        raise ConfigurationError(
            f"Edge lists disagree on node numbering: left has {left.n_t} treated/"
            f"{left.n_c} controls, right has {right.n_t}/{right.n_c}."
        )

    n_t, n_c = left.n_t, left.n_c
    flow = n_t * m
    if n_c < flow:
        return Infeasible(
            reason=f"{n_c} controls cannot supply {m} per treated unit for {n_t} treated units."
        )

    pair_costs = _merge_pair_costs(left, right, lam, overflow)

    out_degree = np.zeros(n_t, dtype=int)
    in_degree = np.zeros(n_c, dtype=int)
    for t, c in pair_costs:
        out_degree[t - 1] += 1
        in_degree[c - n_t - 1] += 1
    short = np.flatnonzero(out_degree < m)
    if len(short):
        node = int(short[0] + 1)
        return Infeasible(
            reason=f"Treated unit {node} has {out_degree[short[0]]} admissible controls; {m} required.",
            treated_node=node,
        )

    must = _include_mask(include, n_c)
    if must is not None:
        if must.sum() > flow:
            return Infeasible(
                reason=f"{int(must.sum())} controls must be included but only {flow} can be matched."
            )
        orphan = np.flatnonzero(must & (in_degree == 0))
        if len(orphan):
            return Infeasible(
                reason=f"Included control node {n_t + orphan[0] + 1} has no admissible treated unit."
            )

    arcs: list[Arc] = [Arc(SOURCE, t, 0, m, kind="supply") for t in range(1, n_t + 1)]
    arcs.extend(Arc(t, c, cost, 1) for (t, c), cost in pair_costs.items())

    next_id = n_t + n_c + 1
    level_nodes: dict[Hashable, int] = {}
    overflow_node = None
    fb_arcs: list[Arc] = []
    control_head: list[int] = []

    if fine_balance is None:
        sink = next_id
    else:
        treated_levels, control_levels = fine_balance.split()
        if (len(treated_levels), len(control_levels)) != (n_t, n_c):
            raise ConfigurationError(
                "Fine-balance treatment vector does not match the edge-list node counts."
            )
        for lv in dict.fromkeys(treated_levels + control_levels):
            level_nodes[lv] = next_id
            next_id += 1

        t_count = Counter(treated_levels)
        c_count = Counter(control_levels)
        quotas = {lv: min(m * t_count.get(lv, 0), c_count.get(lv, 0)) for lv in level_nodes}
        surplus = {lv: c_count.get(lv, 0) - quotas[lv] for lv in level_nodes}

        if fine_balance.exact:
            for lv in level_nodes:
                if c_count.get(lv, 0) < m * t_count.get(lv, 0):
                    return Infeasible(
                        reason=(
                            f"Exact fine balance needs {m * t_count.get(lv, 0)} controls at "
                            f"level {lv!r}; only {c_count.get(lv, 0)} available."
                        )
                    )
        else:
            overflow_node = next_id
            next_id += 1

        sink = next_id
        penalty = fine_balance.penalty
        if penalty is None:
            penalty = config.fine_balance_penalty
        if penalty is None:
            max_cost = max((abs(c) for c in pair_costs.values()), default=0)
            penalty = 2 * max_cost * flow + 1
        penalty = int(round(penalty))

        for lv, node in level_nodes.items():
            if quotas[lv] > 0:
                fb_arcs.append(Arc(node, sink, 0, quotas[lv], kind="quota"))
            if overflow_node is not None and surplus[lv] > 0:
                fb_arcs.append(Arc(node, overflow_node, penalty, surplus[lv], kind="excess"))
        if overflow_node is not None:
            fb_arcs.append(Arc(overflow_node, sink, 0, sum(surplus.values()), kind="overflow"))
        control_head = [level_nodes[lv] for lv in control_levels]

    for j in range(n_c):
        c = n_t + 1 + j
        lower = 1 if must is not None and must[j] else 0
        if control_head:
            arcs.append(Arc(c, control_head[j], 0, 1, lower=lower, kind="level"))
        else:
            arcs.append(Arc(c, sink, 0, 1, lower=lower, kind="sink"))
    arcs.extend(fb_arcs)

    network = Network(
        n_t=n_t,
        n_c=n_c,
        controls_per_treated=m,
        n_nodes=sink + 1,
        arcs=arcs,
        supply={SOURCE: flow, sink: -flow},
        left=left,
        right=right,
        lam=lam,
        level_nodes=level_nodes,
        overflow_node=overflow_node,
    )
    logger.debug(
        "Assembled network: %d nodes, %d arcs, supply %d", network.n_nodes, len(arcs), flow
    )
    return network
