"""Sparse treated-to-control edge lists.

An :class:`EdgeList` is the exchange format between the distance layer and
the network assembler: three aligned integer sequences ``(start_n, end_n,
d)``. Node ids follow one global numbering that is carried on the value
itself: treated units occupy ``1..n_t`` and controls ``n_t+1..n_t+n_c``,
both in dataset order.

Two builders are provided:

- :func:`build_edge_list` computes distances from covariates, optionally
  restricted by exact-match columns, a hard or soft caliper on a score
  vector, and a k-nearest cut on that score.
- :func:`edge_list_from_matrix` converts a dense treated-by-control
  distance matrix, optionally with a caliper.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np
import pandas as pd

from .config import MATCH_CONFIG, MatchConfig
from .distance import DistFunc, as_matrix, make_kernel
from .errors import ConfigurationError, Infeasible
from .logging import get_logger

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


@dataclass
class EdgeList:
    """Sparse bipartite edge list between treated and control nodes.

    Attributes:
        start_n: Treated node ids, each in ``1..n_t``.
        end_n: Control node ids, each in ``n_t+1..n_t+n_c``.
        d: Integer edge costs, aligned with ``start_n``/``end_n``.
        n_t: Number of treated units.
        n_c: Number of control units.
        scale: Factor applied to raw distances before rounding; ``d / scale``
            recovers the distance in kernel units.
    """

    start_n: np.ndarray
    end_n: np.ndarray
    d: np.ndarray
    n_t: int
    n_c: int
    scale: float = 1.0

    def __post_init__(self) -> None:
        self.start_n = np.asarray(self.start_n, dtype=np.int64).ravel()
        self.end_n = np.asarray(self.end_n, dtype=np.int64).ravel()
        d = np.asarray(self.d, dtype=float).ravel()
        self.n_t = int(self.n_t)
        self.n_c = int(self.n_c)

        if not (len(self.start_n) == len(self.end_n) == len(d)):
            raise ConfigurationError(
                f"start_n, end_n and d must have equal lengths; got "
                f"{len(self.start_n)}, {len(self.end_n)}, {len(d)}."
            )
        if not np.all(np.isfinite(d)) or not np.all(d == np.round(d)):
            raise ConfigurationError(
                "Edge costs must be finite integers; pre-scale non-integer distances."
            )
        if self.scale <= 0:
            raise ConfigurationError(f"scale must be positive; got {self.scale}.")
        if len(d):
            if self.start_n.min() < 1 or self.start_n.max() > self.n_t:
                raise ConfigurationError(f"start_n must lie in 1..{self.n_t}.")
            lo, hi = self.n_t + 1, self.n_t + self.n_c
            if self.end_n.min() < lo or self.end_n.max() > hi:
                raise ConfigurationError(f"end_n must lie in {lo}..{hi}.")
            keys = self.start_n * (hi + 1) + self.end_n
            if len(np.unique(keys)) != len(keys):
                raise ConfigurationError("Edge list contains duplicate (start_n, end_n) pairs.")
        self.d = d.astype(np.int64)

    def __len__(self) -> int:
        return len(self.d)

    def arc_map(self) -> dict[tuple[int, int], int]:
        """Map ``(treated node, control node)`` to integer cost."""
        return {
            (int(s), int(e)): int(c)
            for s, e, c in zip(self.start_n, self.end_n, self.d)
        }

    def out_degree(self) -> np.ndarray:
        """Number of edges leaving each treated node, indexed ``0..n_t-1``."""
        return np.bincount(self.start_n - 1, minlength=self.n_t)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({"start_n": self.start_n, "end_n": self.end_n, "d": self.d})

    def to_matrix(self) -> np.ndarray:
        """Dense ``n_t x n_c`` distance matrix (``d / scale``); absent edges are ``inf``."""
        mat = np.full((self.n_t, self.n_c), np.inf)
        mat[self.start_n - 1, self.end_n - self.n_t - 1] = self.d / self.scale
        return mat


@dataclass
class CaliperSpec:
    """Window ``[values_t - low, values_t + high]`` that bounds allowed edges.

    Attributes:
        values: Numeric score per unit (e.g. propensity score), in dataset
            order, same length as the treatment vector.
        low: Distance allowed below the treated unit's value.
        high: Distance allowed above it. ``None`` makes the caliper symmetric.
        k: Keep only the ``k`` controls closest in ``values``.
        penalty: ``inf`` excludes out-of-window edges (hard caliper); a finite
            value keeps them with ``penalty`` added to their distance.
    """

    values: Sequence[float] | np.ndarray
    low: float = np.inf
    high: float | None = None
    k: int | None = None
    penalty: float = np.inf

    def __post_init__(self) -> None:
        self.values = np.asarray(self.values, dtype=float).ravel()
        if self.high is None:
            self.high = self.low
        if self.low < 0 or self.high < 0:
            raise ConfigurationError("Caliper bounds must be non-negative.")
        if self.k is not None and int(self.k) < 1:
            raise ConfigurationError(f"k must be >= 1; got {self.k}.")
        if self.penalty < 0:
            raise ConfigurationError("Caliper penalty must be non-negative.")

    @property
    def hard(self) -> bool:
        return bool(np.isinf(self.penalty))

    def window(self, anchor: float, candidates: np.ndarray) -> np.ndarray:
        """Boolean mask of ``candidates`` inside the window around ``anchor``."""
        return (candidates >= anchor - self.low) & (candidates <= anchor + self.high)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def as_treatment(Z) -> np.ndarray:
    """Validate a treatment indicator and return it as an int array of 0/1."""
    z = np.asarray(Z).ravel()
    if z.dtype == bool:
        z = z.astype(int)
    try:
        z = z.astype(float)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError("Treatment vector must be numeric 0/1 or boolean.") from exc
    if not set(np.unique(z)).issubset({0.0, 1.0}):
        raise ConfigurationError(
            f"Treatment vector must be binary (0/1). Found: {set(np.unique(z))}."
        )
    z = z.astype(int)
    if z.sum() == 0:
        raise ConfigurationError("No treated units found.")
    if z.sum() == len(z):
        raise ConfigurationError("No control units found.")
    return z


def _exact_keys(X, exact: Sequence | None) -> np.ndarray | None:
    """Return the exact-match columns as an object matrix, one row per unit."""
    if exact is None:
        return None
    if isinstance(exact, (str, int)):
        exact = [exact]
    if len(exact) == 0:
        return None
    if isinstance(X, pd.DataFrame):
        missing = [c for c in exact if c not in X.columns]
        if missing:
            raise ConfigurationError(f"Exact-match columns not found in X: {missing}.")
        return X[list(exact)].to_numpy(dtype=object)
    arr = np.asarray(X)
    if arr.ndim == 1:
        arr = arr.reshape(-1, 1)
    if not all(isinstance(c, (int, np.integer)) for c in exact):
        raise ConfigurationError(
            "Exact-match columns must be integer positions when X is not a DataFrame."
        )
    if max(exact) >= arr.shape[1] or min(exact) < 0:
        raise ConfigurationError(f"Exact-match positions out of range for {arr.shape[1]} columns.")
    return arr[:, list(exact)].astype(object)


def _k_nearest(gap: np.ndarray, k: int) -> np.ndarray:
    """Positions of the ``k`` smallest gaps; ties resolved by position.

    Uses a partial sort so the cost is linear in ``len(gap)`` when ``k`` is
    small.
    """
    if k >= len(gap):
        return np.arange(len(gap))
    kth = np.partition(gap, k - 1)[k - 1]
    below = np.flatnonzero(gap < kth)
    tied = np.flatnonzero(gap == kth)[: k - len(below)]
    return np.sort(np.concatenate([below, tied]))


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def build_edge_list(
    Z,
    X,
    exact: Sequence | None = None,
    soft_exact: bool = False,
    caliper: CaliperSpec | None = None,
    k: int | None = None,
    method: str = "maha",
    alpha: float = 1.0,
    dist_func: DistFunc | None = None,
    require_all: bool = True,
    config: MatchConfig | None = None,
) -> EdgeList | Infeasible:
    """Build a possibly sparse treated-to-control edge list from covariates.

    For every treated unit the candidate controls are narrowed in this order:
    exact-match filter (unless ``soft_exact``), caliper window (hard
    calipers only), then the ``k`` nearest in the caliper variable. Distances
    are computed only on the surviving candidates, penalties for soft
    violations are added, and the result is scaled by ``config.cost_scale``
    and rounded to integer costs.

    Args:
        Z: Treatment indicator per unit (0/1 or boolean).
        X: Covariates, shape (n,) or (n, p). A DataFrame enables exact
            matching by column name.
        exact: Columns that must agree between treated and control.
        soft_exact: Keep exact-mismatched edges with
            ``config.soft_exact_penalty`` added instead of dropping them.
        caliper: Optional :class:`CaliperSpec` on a per-unit score.
        k: Keep only the ``k`` controls closest in the caliper variable.
            Overrides ``caliper.k``.
        method: Distance method name, see :mod:`flowmatch.distance`.
        alpha: Tuning constant for the directional kernels.
        dist_func: User kernel for ``method="other"``.
        require_all: If True (default), a treated unit left without
            candidates makes the whole build infeasible. If False, it is
            left without edges (used for advisory layers).
        config: Numeric configuration; defaults to ``MATCH_CONFIG``.

    Returns:
        An :class:`EdgeList`, or :class:`Infeasible` naming the first treated
        node that has no admissible control.

    Raises:
        ConfigurationError: On malformed inputs or incompatible options.
    """
    config = config or MATCH_CONFIG
    z = as_treatment(Z)
    X_mat = as_matrix(X)
    if X_mat.shape[0] != len(z):
        raise ConfigurationError(
            f"X has {X_mat.shape[0]} rows but the treatment vector has {len(z)} entries."
        )
    if not np.all(np.isfinite(X_mat)):
        raise ConfigurationError("Covariates contain missing or infinite values.")

    k = k if k is not None else (caliper.k if caliper is not None else None)
    if k is not None:
        if caliper is None:
            raise ConfigurationError(
                "k-nearest selection needs a caliper variable; pass caliper=CaliperSpec(...)."
            )
        k = int(k)
        if k < 1:
            raise ConfigurationError(f"k must be >= 1; got {k}.")

    p = None
    if caliper is not None:
        p = caliper.values
        if len(p) != len(z):
            raise ConfigurationError(
                f"Caliper variable has {len(p)} entries but the treatment vector has {len(z)}."
            )

    keys = _exact_keys(X, exact)
    kernel = make_kernel(method, X_mat, alpha=alpha, dist_func=dist_func)
    X_used = kernel.prepare(X_mat)

    treated_pos = np.flatnonzero(z == 1)
    control_pos = np.flatnonzero(z == 0)
    n_t, n_c = len(treated_pos), len(control_pos)
    X_t, X_c = X_used[treated_pos], X_used[control_pos]
    p_t = p[treated_pos] if p is not None else None
    p_c = p[control_pos] if p is not None else None
    keys_t = keys[treated_pos] if keys is not None else None
    keys_c = keys[control_pos] if keys is not None else None

    starts: list[np.ndarray] = []
    ends: list[np.ndarray] = []
    costs: list[np.ndarray] = []

    for i in range(n_t):
        cand = np.ones(n_c, dtype=bool)
        mismatch = None
        if keys is not None:
            agree = np.all(keys_c == keys_t[i], axis=1)
            if soft_exact:
                mismatch = ~agree
            else:
                cand &= agree

        in_window = None
        if caliper is not None:
            in_window = caliper.window(p_t[i], p_c)
            if caliper.hard:
                cand &= in_window

        idx = np.flatnonzero(cand)
        if k is not None and len(idx) > k:
            idx = idx[_k_nearest(np.abs(p_c[idx] - p_t[i]), k)]

        if len(idx) == 0:
            if require_all:
                logger.info("Treated node %d has no admissible control", i + 1)
                return Infeasible(
                    reason=(
                        f"Treated unit {i + 1} has no admissible control under the "
                        "current caliper/exact-match constraints."
                    ),
                    treated_node=i + 1,
                )
            logger.debug("Treated node %d left without edges", i + 1)
            continue

        dist = kernel(X_c[idx], X_t[i])
        if in_window is not None and not caliper.hard:
            dist = dist + np.where(in_window[idx], 0.0, caliper.penalty)
        if mismatch is not None:
            dist = dist + np.where(mismatch[idx], config.soft_exact_penalty, 0.0)
        if not np.all(np.isfinite(dist)):
            raise ConfigurationError(
                f"Distance kernel returned non-finite values for treated unit {i + 1}."
            )

        starts.append(np.full(len(idx), i + 1))
        ends.append(idx + n_t + 1)
        costs.append(np.rint(dist * config.cost_scale))

    if not starts:
        return Infeasible(reason="No treated unit has an admissible control.")

    edges = EdgeList(
        start_n=np.concatenate(starts),
        end_n=np.concatenate(ends),
        d=np.concatenate(costs),
        n_t=n_t,
        n_c=n_c,
        scale=config.cost_scale,
    )
    logger.debug(
        "Built %d edges for %d treated x %d controls (method=%s)",
        len(edges), n_t, n_c, kernel.method.value,
    )
    return edges


def edge_list_from_matrix(
    Z,
    dist_mat,
    p=None,
    caliper: float | None = None,
    cost_scale: float = 1.0,
    require_all: bool = True,
) -> EdgeList | Infeasible:
    """Convert a dense treated-by-control distance matrix to an edge list.

    Args:
        Z: Treatment vector (rows of ``dist_mat`` follow the treated units
            and columns the controls, both in dataset order), or the number
            of treated units when ``p`` is not used.
        dist_mat: Array of shape (n_t, n_c). ``inf`` or ``NaN`` entries are
            treated as forbidden pairs.
        p: Optional per-unit score on which a symmetric caliper applies.
            Requires ``Z`` to be the treatment vector.
        caliper: Caliper half-width on ``p``.
        cost_scale: Factor applied before rounding to integer costs. The
            default of 1 expects integer-valued distances.
        require_all: As in :func:`build_edge_list`; when False, treated rows
            with no admissible control are left without edges.

    Returns:
        An :class:`EdgeList`, or :class:`Infeasible` if the caliper leaves a
        treated unit without any control.
    """
    mat = np.asarray(dist_mat, dtype=float)
    if mat.ndim != 2:
        raise ConfigurationError("dist_mat must be a 2-D matrix.")
    n_t, n_c = mat.shape

    allowed = np.isfinite(mat)
    if np.isscalar(Z):
        if int(Z) != n_t:
            raise ConfigurationError(f"dist_mat has {n_t} rows but n_t={Z}.")
        if p is not None:
            raise ConfigurationError("A caliper on p needs the full treatment vector Z.")
    else:
        z = as_treatment(Z)
        if (z.sum(), len(z) - z.sum()) != (n_t, n_c):
            raise ConfigurationError(
                f"dist_mat shape {mat.shape} does not match {z.sum()} treated "
                f"and {len(z) - z.sum()} controls."
            )
        if p is not None and caliper is not None:
            p = np.asarray(p, dtype=float).ravel()
            if len(p) != len(z):
                raise ConfigurationError("p must have one entry per unit.")
            gap = np.abs(p[z == 1][:, None] - p[z == 0][None, :])
            allowed &= gap <= caliper

    empty = np.flatnonzero(~allowed.any(axis=1))
    if len(empty) and require_all:
        return Infeasible(
            reason=f"Treated unit {empty[0] + 1} has no admissible control.",
            treated_node=int(empty[0] + 1),
        )
    if len(empty) == n_t:
        return Infeasible(reason="No treated unit has an admissible control.")

    rows, cols = np.nonzero(allowed)
    return EdgeList(
        start_n=rows + 1,
        end_n=cols + n_t + 1,
        d=np.rint(mat[rows, cols] * cost_scale),
        n_t=n_t,
        n_c=n_c,
        scale=cost_scale,
    )
