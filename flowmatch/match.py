"""Two-criteria matching front-ends.

Each front-end runs the same synchronous chain::

    edge list(s) -> assemble_network -> solve_network -> decode_flow

and differs only in how the two edge lists are obtained:

- :func:`match_2c_list` takes ready-made :class:`EdgeList` values.
- :func:`match_2c_mat` takes dense treated-by-control distance matrices.
- :func:`match_2c` builds both layers from covariates and a propensity
  score: the left layer pairs units on a covariate distance inside a
  propensity caliper, the right layer balances the propensity score itself.

Every infeasible outcome, whichever stage detects it, comes back as a
:class:`~flowmatch.decode.MatchResult` with ``feasible=False`` plus a
``UserWarning``. Nothing is retried or relaxed automatically.

References:
    Zhang, Small, Heng, Pimentel (2021). Matching one sample according to
        two criteria in observational studies. JASA.
    Rosenbaum, Ross, Silber (2007). Minimum distance matched sampling with
        fine balance in an observational study of treatment for ovarian
        cancer. JASA, 102(477), 75-83.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np
import pandas as pd

from .config import MATCH_CONFIG, MatchConfig
from .decode import MatchResult, decode_flow, infeasible_result
from .distance import DistFunc
from .edges import CaliperSpec, EdgeList, as_treatment, build_edge_list, edge_list_from_matrix
from .errors import ConfigurationError, Infeasible
from .logging import get_logger
from .network import FineBalanceSpec, assemble_network
from .solver import MinCostFlowSolver, solve_network
from .utils.validators import validate_match_inputs

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _include_controls(include, z: np.ndarray) -> np.ndarray | None:
    """Reduce a per-row include flag to control node order."""
    if include is None:
        return None
    flags = np.asarray(include).ravel()
    if len(flags) != len(z):
        raise ConfigurationError(
            f"include must have one entry per dataset row ({len(z)}); got {len(flags)}."
        )
    flags = flags.astype(bool)
    if np.any(flags & (z == 1)):
        logger.debug("include flags on treated rows are ignored")
    return flags[z == 0]


def _fine_balance(fine_balance, dataset: pd.DataFrame, z: np.ndarray) -> FineBalanceSpec | None:
    """Accept a ready spec, or column name(s) of ``dataset`` to balance."""
    if fine_balance is None or isinstance(fine_balance, FineBalanceSpec):
        return fine_balance
    return FineBalanceSpec.from_frame(dataset, z, fine_balance)


def _check_layer(name: str, edges: EdgeList | Infeasible | None, z: np.ndarray) -> None:
    """Edge-list node counts must agree with the treatment vector."""
    if not isinstance(edges, EdgeList):
        return
    n_t = int(z.sum())
    n_c = len(z) - n_t
    if (edges.n_t, edges.n_c) != (n_t, n_c):
        raise ConfigurationError(
            f"{name} edge list numbers {edges.n_t} treated/{edges.n_c} controls but the "
            f"treatment vector has {n_t}/{n_c}."
        )


def _run_chain(
    z: np.ndarray,
    dataset: pd.DataFrame,
    left: EdgeList | Infeasible,
    right: EdgeList | Infeasible | None,
    lam: float,
    controls: int,
    overflow: bool,
    include,
    fine_balance,
    solver: MinCostFlowSolver | None,
    config: MatchConfig,
) -> MatchResult:
    if len(dataset) != len(z):
        raise ConfigurationError(
            f"dataset has {len(dataset)} rows but the treatment vector has {len(z)}."
        )
    _check_layer("Left", left, z)
    _check_layer("Right", right, z)
    if isinstance(left, Infeasible):
        return infeasible_result(left)
    if isinstance(right, Infeasible):
        if not overflow:
            return infeasible_result(right)
        logger.info("Right layer has no admissible arcs; matching on the left layer only")
        right = None

    network = assemble_network(
        left,
        right,
        lam=lam,
        fine_balance=_fine_balance(fine_balance, dataset, z),
        controls_per_treated=controls,
        include=_include_controls(include, z),
        overflow=overflow,
        config=config,
    )
    if isinstance(network, Infeasible):
        return infeasible_result(network)

    solution = solve_network(network, solver)
    return decode_flow(network, solution, dataset, z)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def match_2c_list(
    Z,
    dataset: pd.DataFrame,
    dist_list_1: EdgeList | Infeasible,
    dist_list_2: EdgeList | Infeasible | None = None,
    lam: float = 1000,
    controls: int = 1,
    overflow: bool = False,
    include=None,
    fine_balance: FineBalanceSpec | str | Sequence[str] | None = None,
    solver: MinCostFlowSolver | None = None,
    config: MatchConfig | None = None,
) -> MatchResult:
    """Match using two precomputed edge lists.

    Args:
        Z: Treatment indicator per dataset row.
        dataset: Data frame, one row per unit, returned with the match.
        dist_list_1: Left edge list; governs pairing and supplies the
            reported ``distance``.
        dist_list_2: Optional right edge list; its costs are multiplied by
            ``lam`` and added to the left costs.
        lam: Weight of the right layer.
        controls: Controls matched to each treated unit.
        overflow: Let the left layer alone decide which pairs are allowed.
        include: Optional boolean per dataset row; flagged controls must be
            matched.
        fine_balance: :class:`FineBalanceSpec`, or column name(s) of
            ``dataset`` whose (joint) levels should be near-finely balanced.
        solver: Min-cost flow implementation; defaults to network simplex.
        config: Numeric configuration; defaults to ``MATCH_CONFIG``.

    Returns:
        A :class:`MatchResult`.
    """
    config = config or MATCH_CONFIG
    z = as_treatment(Z)
    return _run_chain(
        z, dataset, dist_list_1, dist_list_2, lam, controls, overflow,
        include, fine_balance, solver, config,
    )


def match_2c_mat(
    Z,
    dataset: pd.DataFrame,
    dist_mat_1,
    dist_mat_2=None,
    lam: float = 1000,
    controls: int = 1,
    p_1=None,
    caliper_1: float | None = None,
    p_2=None,
    caliper_2: float | None = None,
    overflow: bool = False,
    include=None,
    fine_balance: FineBalanceSpec | str | Sequence[str] | None = None,
    solver: MinCostFlowSolver | None = None,
    config: MatchConfig | None = None,
) -> MatchResult:
    """Match using dense treated-by-control distance matrices.

    Rows of each matrix follow the treated units and columns the controls,
    both in dataset order. ``inf``/``NaN`` entries forbid a pair. Distances
    are multiplied by ``config.cost_scale`` and rounded.

    Args:
        Z: Treatment indicator per dataset row.
        dataset: Data frame, one row per unit.
        dist_mat_1: Left distance matrix, shape (n_t, n_c).
        dist_mat_2: Optional right distance matrix, same shape.
        lam: Weight of the right layer.
        controls: Controls matched to each treated unit.
        p_1: Optional per-row score for a caliper on the left layer.
        caliper_1: Caliper half-width on ``p_1``.
        p_2: Optional per-row score for a caliper on the right layer.
        caliper_2: Caliper half-width on ``p_2``.
        overflow: See :func:`match_2c_list`.
        include: See :func:`match_2c_list`.
        fine_balance: See :func:`match_2c_list`.
        solver: See :func:`match_2c_list`.
        config: See :func:`match_2c_list`.

    Returns:
        A :class:`MatchResult`.
    """
    config = config or MATCH_CONFIG
    z = as_treatment(Z)
    left = edge_list_from_matrix(
        z, dist_mat_1, p=p_1, caliper=caliper_1, cost_scale=config.cost_scale
    )
    right = None
    if dist_mat_2 is not None:
        right = edge_list_from_matrix(
            z, dist_mat_2, p=p_2, caliper=caliper_2,
            cost_scale=config.cost_scale, require_all=not overflow,
        )
    return _run_chain(
        z, dataset, left, right, lam, controls, overflow,
        include, fine_balance, solver, config,
    )


def match_2c(
    Z,
    X,
    propensity,
    dataset: pd.DataFrame,
    method: str = "maha",
    dist_func: DistFunc | None = None,
    exact: Sequence | None = None,
    soft_exact: bool = False,
    caliper_left: float = 1.0,
    caliper_right: float = 1.0,
    k_left: int | None = None,
    k_right: int | None = None,
    caliper_penalty: float = np.inf,
    fb_var: str | Sequence[str] | None = None,
    fb_exact: bool = False,
    controls: int = 1,
    include=None,
    overflow: bool = False,
    lam: float = 1000,
    alpha: float = 1.0,
    solver: MinCostFlowSolver | None = None,
    config: MatchConfig | None = None,
) -> MatchResult:
    """Optimal matching on covariates, balancing the propensity score.

    The left layer connects each treated unit to the controls within
    ``caliper_left`` on the propensity score (at most ``k_left`` of them),
    with cost given by ``method`` on ``X``. The right layer connects units
    within ``caliper_right`` (at most ``k_right``) with cost equal to the
    absolute propensity difference, so the solver also balances the score.
    ``fb_var`` adds near-fine balance on nominal column(s) of ``dataset``.

    Args:
        Z: Treatment indicator per row.
        X: Covariates, shape (n,) or (n, p). A DataFrame allows ``exact`` by
            column name.
        propensity: Propensity score per row.
        dataset: Data frame returned with the match.
        method: Distance for the left layer, see :mod:`flowmatch.distance`.
        dist_func: User kernel for ``method="other"``.
        exact: Column(s) of ``X`` that must agree within a pair.
        soft_exact: Penalize exact mismatches instead of forbidding them.
        caliper_left: Propensity caliper of the left layer.
        caliper_right: Propensity caliper of the right layer.
        k_left: Keep at most this many controls per treated unit (left).
        k_right: Keep at most this many controls per treated unit (right).
        caliper_penalty: ``inf`` makes ``caliper_left`` hard; a finite value
            keeps out-of-caliper pairs at this added distance.
        fb_var: Column name(s) of ``dataset`` for fine balance.
        fb_exact: Require exact instead of near-fine balance.
        controls: Controls matched to each treated unit.
        include: Optional boolean per row; flagged controls must be matched.
        overflow: Let the left layer alone decide which pairs are allowed.
        lam: Weight of the right layer.
        alpha: Tuning constant for the directional distances.
        solver: Min-cost flow implementation; defaults to network simplex.
        config: Numeric configuration; defaults to ``MATCH_CONFIG``.

    Returns:
        A :class:`MatchResult`.

    Example::

        result = match_2c(df["treated"], df[["age", "income"]], df["ps"], df,
                          caliper_left=0.2, caliper_right=0.05, lam=100)
        if result.feasible:
            matched = result.matched_data_in_order
    """
    config = config or MATCH_CONFIG
    z = as_treatment(Z)
    p = np.asarray(propensity, dtype=float).ravel()

    for finding in validate_match_inputs(X, z, exact=exact, propensity=p, controls=controls):
        if finding.severity == "info":
            logger.info("%s: %s", finding.column, finding.message)
        else:
            logger.warning("[%s] %s: %s", finding.severity.upper(), finding.column, finding.message)

    left = build_edge_list(
        z,
        X,
        exact=exact,
        soft_exact=soft_exact,
        caliper=CaliperSpec(p, low=caliper_left, k=k_left, penalty=caliper_penalty),
        method=method,
        alpha=alpha,
        dist_func=dist_func,
        config=config,
    )
    right = build_edge_list(
        z,
        p,
        caliper=CaliperSpec(p, low=caliper_right, k=k_right),
        method="L1",
        require_all=not overflow,
        config=config,
    )

    fine_balance = None
    if fb_var is not None:
        fine_balance = FineBalanceSpec.from_frame(dataset, z, fb_var, exact=fb_exact)

    return _run_chain(
        z, dataset, left, right, lam, controls, overflow,
        include, fine_balance, solver, config,
    )
