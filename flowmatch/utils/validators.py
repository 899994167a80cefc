"""Input validation utilities for matching runs.

Inspects the treatment vector, covariates, exact-match columns and the
propensity score before a network is built. All checks produce
ValidationWarning namedtuples -- findings are advisory only. The caller
decides whether to proceed; nothing is blocked. Malformed inputs that make
a run impossible are rejected later by the builders with
:class:`~flowmatch.errors.ConfigurationError`.
"""

from __future__ import annotations

from collections import Counter, namedtuple
from typing import Sequence

import numpy as np
import pandas as pd

from ..edges import as_treatment
from ..errors import ConfigurationError

# ---------------------------------------------------------------------------
# Public types
# ---------------------------------------------------------------------------

ValidationWarning = namedtuple(
    "ValidationWarning",
    ["column", "severity", "message"],
)
"""A single advisory finding raised during input validation.

Attributes:
    column: Covariate name the finding applies to, or ``"__dataset__"`` for
        dataset-level checks.
    severity: One of ``"info"``, ``"warning"``, or ``"error"`` (still
        advisory -- ``"error"`` means the match is expected to come back
        infeasible or the distance cannot be computed).
    message: Human-readable description.
"""

# Sentinel for dataset-level (non-column-specific) findings
_DATASET = "__dataset__"


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _null_check(
    df: pd.DataFrame,
    column,
) -> list[ValidationWarning]:
    """Flag covariates with any null value.

    Distances involving a null are undefined, so any null is reported; more
    than half nulls is an error.
    """
    null_pct = df[column].isna().mean()
    if null_pct == 0:
        return []
    severity = "error" if null_pct > 0.50 else "warning"
    return [
        ValidationWarning(
            column=column,
            severity=severity,
            message=(
                f"{null_pct:.1%} of values are null. "
                "Impute or drop these rows before matching."
            ),
        )
    ]


def _constant_check(
    df: pd.DataFrame,
    column,
) -> list[ValidationWarning]:
    """Warn when a covariate takes a single value.

    A constant column makes the covariance matrix singular, so the
    Mahalanobis distances cannot be computed.
    """
    if df[column].nunique(dropna=True) > 1:
        return []
    return [
        ValidationWarning(
            column=column,
            severity="warning",
            message=(
                "Covariate is constant. Remove it before using a "
                "Mahalanobis distance."
            ),
        )
    ]


def _supply_check(
    z: np.ndarray,
    controls: int,
) -> list[ValidationWarning]:
    """Check that there are enough controls, and flag a thin control pool.

    Args:
        z: 0/1 treatment vector.
        controls: Controls matched to each treated unit.

    Returns:
        List of zero or one ValidationWarning.
    """
    n_t = int(z.sum())
    n_c = len(z) - n_t
    if n_c < controls * n_t:
        return [
            ValidationWarning(
                column=_DATASET,
                severity="error",
                message=(
                    f"{n_c:,} controls cannot supply {controls} per treated unit "
                    f"for {n_t:,} treated units. The match will be infeasible."
                ),
            )
        ]
    if n_c < 2 * controls * n_t:
        return [
            ValidationWarning(
                column=_DATASET,
                severity="info",
                message=(
                    f"Only {n_c:,} controls for {n_t:,} treated units "
                    f"({controls} each). Calipers may leave treated units unmatched."
                ),
            )
        ]
    return []


def _exact_strata_check(
    df: pd.DataFrame,
    z: np.ndarray,
    exact: Sequence,
    controls: int,
) -> list[ValidationWarning]:
    """Flag exact-match strata with too few controls for their treated units."""
    keys = list(df[list(exact)].itertuples(index=False, name=None))
    n_treated = Counter(k for k, t in zip(keys, z) if t == 1)
    n_control = Counter(k for k, t in zip(keys, z) if t == 0)
    short = [k for k in n_treated if n_control.get(k, 0) < controls * n_treated[k]]
    if not short:
        return []
    first = short[0]
    return [
        ValidationWarning(
            column=", ".join(str(c) for c in exact),
            severity="error",
            message=(
                f"{len(short)} exact-match strata have fewer than {controls} "
                f"control(s) per treated unit (e.g. {first!r}: "
                f"{n_treated[first]} treated, {n_control.get(first, 0)} controls). "
                "Hard exact matching will be infeasible; drop the column or use "
                "soft exact matching."
            ),
        )
    ]


def _propensity_check(
    propensity: np.ndarray,
    z: np.ndarray,
) -> list[ValidationWarning]:
    """Check the range of the propensity score and treated/control overlap."""
    out: list[ValidationWarning] = []
    if np.any(~np.isfinite(propensity)) or np.any((propensity < 0) | (propensity > 1)):
        out.append(
            ValidationWarning(
                column="propensity",
                severity="error",
                message="Propensity scores must be finite and lie in [0, 1].",
            )
        )
        return out

    p_t, p_c = propensity[z == 1], propensity[z == 0]
    outside = np.mean((p_t < p_c.min()) | (p_t > p_c.max()))
    if outside > 0:
        out.append(
            ValidationWarning(
                column="propensity",
                severity="warning",
                message=(
                    f"{outside:.1%} of treated units have a propensity score outside "
                    "the range of the controls. Calipers on the score may make "
                    "them unmatchable."
                ),
            )
        )
    return out


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def validate_match_inputs(
    X,
    Z,
    exact: Sequence | None = None,
    propensity=None,
    controls: int = 1,
) -> list[ValidationWarning]:
    """Run all advisory checks on the inputs of a matching run.

    Checks performed:
        - Control supply versus ``controls`` per treated unit
        - Null and constant covariates
        - Exact-match strata lacking controls
        - Propensity score range and treated/control overlap

    Args:
        X: Covariates, shape (n,) or (n, p). A DataFrame keeps its column
            names in the findings; otherwise columns are numbered.
        Z: Treatment indicator per unit.
        exact: Exact-match columns (names for a DataFrame, else positions).
        propensity: Optional propensity score per unit.
        controls: Controls matched to each treated unit.

    Returns:
        List of ValidationWarning namedtuples, possibly empty if the inputs
        are clean. Dataset-level checks come first.

    Raises:
        ConfigurationError: If ``X`` is empty or its length disagrees
            with ``Z``.
    """
    if isinstance(X, pd.DataFrame):
        df = X.reset_index(drop=True)
    elif isinstance(X, pd.Series):
        df = X.reset_index(drop=True).to_frame()
    else:
        arr = np.asarray(X)
        df = pd.DataFrame(arr.reshape(len(arr), -1) if arr.ndim == 1 else arr)
    if df.empty:
        raise ConfigurationError("Covariates are empty; cannot validate.")

    z = as_treatment(Z)
    if len(z) != len(df):
        raise ConfigurationError(
            f"Covariates have {len(df)} rows but the treatment vector has {len(z)}."
        )

    findings: list[ValidationWarning] = []
    findings.extend(_supply_check(z, int(controls)))

    for col in df.columns:
        findings.extend(_null_check(df, col))
        findings.extend(_constant_check(df, col))

    if exact is not None:
        if isinstance(exact, (str, int)):
            exact = [exact]
        exact = [c for c in exact if c in df.columns]
        if exact:
            findings.extend(_exact_strata_check(df, z, exact, int(controls)))

    if propensity is not None:
        propensity = np.asarray(propensity, dtype=float).ravel()
        if len(propensity) != len(z):
            raise ConfigurationError(
                f"Propensity has {len(propensity)} entries but the treatment vector has {len(z)}."
            )
        findings.extend(_propensity_check(propensity, z))

    return findings
