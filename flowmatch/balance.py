"""Balance diagnostics for matched samples.

Compares covariates between treated units and their matched controls.
Core outputs:
  - Standardized Mean Difference (SMD) tables (before and after matching)
  - Level-count tables for nominal covariates (fine-balance check)
  - A plain-text summary

References:
  Austin (2009) Statistics in Medicine 28(25): 3083-3107.
  Stuart (2010) Statistical Science 25(1): 1-21.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass, field
from typing import Sequence

import numpy as np
import pandas as pd

from .decode import MatchResult
from .edges import as_treatment
from .errors import ConfigurationError


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SMD_PASS_THRESHOLD = 0.10
SMD_CAUTION_THRESHOLD = 0.25

STATUS_PASS = "Pass"
STATUS_CAUTION = "Caution"
STATUS_FAIL = "Fail"


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass
class BalanceResult:
    """Container for covariate balance diagnostics.

    Attributes:
        table: DataFrame with columns
            [covariate, mean_treated, mean_control, smd_raw,
             smd_adjusted, status].
            One row per covariate (or per dummy level for categoricals).
        max_smd: Maximum absolute adjusted SMD across all covariates.
        all_pass: True when every covariate has |adjusted SMD| < 0.10.
    """

    table: pd.DataFrame
    max_smd: float
    all_pass: bool
    # Internal: raw-only result when no matched sample was supplied
    _raw_only: bool = field(default=False, repr=False)


# ---------------------------------------------------------------------------
# SMD computation helpers
# ---------------------------------------------------------------------------

def _smd_continuous(
    vals_treated: np.ndarray,
    vals_control: np.ndarray,
) -> float:
    """Compute SMD for a continuous variable.

    Formula: (mean_T - mean_C) / sqrt((var_T + var_C) / 2)

    Uses ddof=1 (sample variance). Returns 0.0 when both groups have
    zero variance (constant columns).

    Args:
        vals_treated: Numeric values for the treated group.
        vals_control: Numeric values for the control group.

    Returns:
        Signed SMD (float). Positive means treated > control.
    """
    mean_t = np.nanmean(vals_treated)
    mean_c = np.nanmean(vals_control)
    var_t = np.nanvar(vals_treated, ddof=1) if len(vals_treated) > 1 else 0.0
    var_c = np.nanvar(vals_control, ddof=1) if len(vals_control) > 1 else 0.0
    pooled_sd = np.sqrt((var_t + var_c) / 2.0)
    if pooled_sd == 0.0:
        return 0.0
    return float((mean_t - mean_c) / pooled_sd)


def _smd_binary(
    p_treated: float,
    p_control: float,
) -> float:
    """Compute SMD for a binary (0/1) variable using the proportion formula.

    Formula: (p_T - p_C) / sqrt((p_T*(1-p_T) + p_C*(1-p_C)) / 2)

    Returns 0.0 when the denominator is zero.
    """
    denom = np.sqrt(
        (p_treated * (1 - p_treated) + p_control * (1 - p_control)) / 2.0
    )
    if denom == 0.0:
        return 0.0
    return float((p_treated - p_control) / denom)


def _is_string_like_dtype(series: pd.Series) -> bool:
    """Return True for categorical, object, or string series."""
    if isinstance(series.dtype, pd.CategoricalDtype):
        return True
    if series.dtype == object:
        return True
    if isinstance(series.dtype, pd.StringDtype):
        return True
    return getattr(series.dtype, "name", "") in ("str", "string")


def _is_binary(series: pd.Series) -> bool:
    unique_vals = set(series.dropna().unique())
    return unique_vals <= {0, 1, 0.0, 1.0}


def _compute_smd_for_series(
    series: pd.Series,
    mask_treated: np.ndarray,
    mask_control: np.ndarray,
    name: str,
) -> list[dict]:
    """Compute SMD row(s) for a single covariate series.

    Handles three cases:
      1. Numeric binary (0/1): binary SMD formula.
      2. Numeric continuous: continuous SMD formula.
      3. Categorical/object: dummy-code, then binary SMD per level.

    Returns:
        List of dicts, each with keys:
        [covariate, mean_treated, mean_control, smd].
    """
    rows: list[dict] = []

    if _is_string_like_dtype(series):
        dummies = pd.get_dummies(series, prefix=name, prefix_sep="_", dtype=float)
        for col in dummies.columns:
            d = dummies[col].to_numpy()
            p_t = float(np.nanmean(d[mask_treated]))
            p_c = float(np.nanmean(d[mask_control]))
            rows.append({
                "covariate": col,
                "mean_treated": p_t,
                "mean_control": p_c,
                "smd": _smd_binary(p_t, p_c),
            })

    elif pd.api.types.is_numeric_dtype(series):
        vals = series.to_numpy(dtype=float)
        vals_t, vals_c = vals[mask_treated], vals[mask_control]
        mean_t = float(np.nanmean(vals_t))
        mean_c = float(np.nanmean(vals_c))
        smd = _smd_binary(mean_t, mean_c) if _is_binary(series) else _smd_continuous(vals_t, vals_c)
        rows.append({
            "covariate": name,
            "mean_treated": mean_t,
            "mean_control": mean_c,
            "smd": smd,
        })
    else:
        warnings.warn(
            f"Column '{name}' has unrecognised dtype {series.dtype}; "
            "skipping balance computation for this covariate.",
            stacklevel=3,
        )

    return rows


def _smd_status(abs_smd: float) -> str:
    """Map an absolute SMD value to a Pass / Caution / Fail status."""
    if abs_smd < SMD_PASS_THRESHOLD:
        return STATUS_PASS
    if abs_smd < SMD_CAUTION_THRESHOLD:
        return STATUS_CAUTION
    return STATUS_FAIL


def _smd_table(
    df: pd.DataFrame,
    z: np.ndarray,
    covariate_cols: Sequence[str],
) -> pd.DataFrame:
    rows: list[dict] = []
    for col in covariate_cols:
        rows.extend(_compute_smd_for_series(df[col], z == 1, z == 0, col))
    return pd.DataFrame(rows, columns=["covariate", "mean_treated", "mean_control", "smd"])


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def compute_balance(
    df: pd.DataFrame,
    treatment,
    covariate_cols: Sequence[str],
    matched_indices: tuple[np.ndarray, np.ndarray] | None = None,
) -> BalanceResult:
    """Compute covariate balance between treated and control groups.

    Computes raw (unmatched) SMD for all covariates, and an adjusted SMD on
    the matched subsample when ``matched_indices`` is provided. Categorical
    covariates are dummy-coded and each level gets its own row.

    Args:
        df: Full dataset (all rows).
        treatment: Name of the binary treatment column (0/1), or the
            treatment vector itself.
        covariate_cols: Covariate column names to assess. Missing columns
            are skipped with a warning.
        matched_indices: Optional tuple (treated_idx, control_idx) of
            positional row indices of the matched treated and control units.

    Returns:
        BalanceResult with:
          - table: DataFrame [covariate, mean_treated, mean_control,
                               smd_raw, smd_adjusted, status]
          - max_smd: Maximum absolute *adjusted* SMD.
          - all_pass: True when all |adjusted SMD| < 0.10.

    Raises:
        ConfigurationError: If the treatment is not binary or its length
            disagrees with ``df``.
    """
    z = as_treatment(df[treatment] if isinstance(treatment, str) else treatment)
    if len(z) != len(df):
        raise ConfigurationError(
            f"Treatment vector has {len(z)} entries but df has {len(df)} rows."
        )

    present = []
    for col in covariate_cols:
        if col not in df.columns:
            warnings.warn(
                f"Covariate column '{col}' not found in DataFrame; skipping.",
                UserWarning,
                stacklevel=2,
            )
            continue
        present.append(col)

    table = _smd_table(df, z, present).rename(columns={"smd": "smd_raw"})

    if matched_indices is not None:
        treated_idx, control_idx = (np.asarray(i, dtype=int) for i in matched_indices)
        df_matched = pd.concat(
            [df.iloc[treated_idx], df.iloc[control_idx]], ignore_index=True
        )
        z_matched = np.r_[np.ones(len(treated_idx), dtype=int), np.zeros(len(control_idx), dtype=int)]
        adj = _smd_table(df_matched, z_matched, present)
        # Levels absent from the matched sample are dropped by get_dummies
        table = table.merge(adj[["covariate", "smd"]], on="covariate", how="left")
        table = table.rename(columns={"smd": "smd_adjusted"})
        table["smd_adjusted"] = table["smd_adjusted"].fillna(0.0)
    else:
        table["smd_adjusted"] = table["smd_raw"]

    table["status"] = table["smd_adjusted"].abs().apply(_smd_status)
    table = table[
        ["covariate", "mean_treated", "mean_control", "smd_raw", "smd_adjusted", "status"]
    ]

    abs_adj = table["smd_adjusted"].abs()
    return BalanceResult(
        table=table.reset_index(drop=True),
        max_smd=float(abs_adj.max()) if len(table) else 0.0,
        all_pass=bool((abs_adj < SMD_PASS_THRESHOLD).all()),
        _raw_only=matched_indices is None,
    )


def check_balance(
    dataset: pd.DataFrame,
    Z,
    result: MatchResult,
    covariate_cols: Sequence[str],
) -> BalanceResult:
    """Balance of ``covariate_cols`` before and after a feasible match.

    Args:
        dataset: The dataset passed to the matching call.
        Z: Its treatment vector.
        result: A feasible :class:`MatchResult`.
        covariate_cols: Columns to compare.

    Raises:
        ConfigurationError: If ``result`` is infeasible.
    """
    if not result.feasible or result.matched_pairs is None:
        raise ConfigurationError("Cannot check balance of an infeasible match.")
    pairs = result.matched_pairs
    treated_idx = np.unique(pairs["treated_idx"].to_numpy())
    control_idx = pairs["control_idx"].to_numpy()
    return compute_balance(dataset, Z, covariate_cols, matched_indices=(treated_idx, control_idx))


def level_counts(
    result: MatchResult,
    column: str | Sequence[str],
) -> pd.DataFrame:
    """Count treated and matched-control rows per level of a nominal column.

    Under exact fine balance (and near-fine balance whenever the controls
    allow it) ``matched_control == controls_per_treated * treated`` on
    every level.

    Args:
        result: A feasible :class:`MatchResult`.
        column: Column name, or several for joint levels.

    Returns:
        DataFrame indexed by level with columns [treated, matched_control].
    """
    if not result.feasible or result.matched_pairs is None:
        raise ConfigurationError("Cannot count levels of an infeasible match.")
    data = result.data_with_matched_set_ind
    columns = [column] if isinstance(column, str) else list(column)
    pairs = result.matched_pairs

    def _levels(rows: np.ndarray) -> pd.Series:
        subset = data.iloc[rows][columns]
        if len(columns) == 1:
            return subset[columns[0]]
        return pd.Series(list(subset.itertuples(index=False, name=None)), dtype=object)

    treated = _levels(np.unique(pairs["treated_idx"].to_numpy())).value_counts()
    control = _levels(pairs["control_idx"].to_numpy()).value_counts()
    counts = pd.DataFrame({"treated": treated, "matched_control": control})
    return counts.fillna(0).astype(int)


def balance_summary(result: BalanceResult) -> str:
    """Return a human-readable text summary of a BalanceResult.

    Args:
        result: BalanceResult from compute_balance or check_balance.

    Returns:
        Multi-line string suitable for console printing or logging.
    """
    n = len(result.table)
    n_pass = (result.table["status"] == STATUS_PASS).sum()
    n_caution = (result.table["status"] == STATUS_CAUTION).sum()
    n_fail = (result.table["status"] == STATUS_FAIL).sum()

    lines = [
        f"Balance Summary ({n} covariate rows)",
        f"  Pass     (|SMD| < {SMD_PASS_THRESHOLD}):    {n_pass}",
        f"  Caution  (|SMD| {SMD_PASS_THRESHOLD}-{SMD_CAUTION_THRESHOLD}): {n_caution}",
        f"  Fail     (|SMD| > {SMD_CAUTION_THRESHOLD}):   {n_fail}",
        f"  Max |adjusted SMD|: {result.max_smd:.4f}",
        f"  All pass: {result.all_pass}",
    ]
    return "\n".join(lines)
