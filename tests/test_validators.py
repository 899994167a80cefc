"""Tests for flowmatch/utils/validators.py -- advisory input checks.

Tests cover:
- Clean inputs produce no warnings (beyond info)
- Control supply shortfall is an error; a thin pool is info
- Null and constant covariates are flagged
- Exact-match strata without enough controls are flagged
- Propensity range and overlap checks
- Hard failures: empty covariates, length mismatch
"""

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from flowmatch.errors import ConfigurationError
from flowmatch.utils.validators import ValidationWarning, validate_match_inputs


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def _clean_inputs(n: int = 100, seed: int = 0):
    rng = np.random.default_rng(seed)
    X = pd.DataFrame({
        "age": rng.normal(50, 10, n),
        "income": rng.lognormal(10, 0.5, n),
        "site": rng.choice(["a", "b"], n),
    })
    z = np.zeros(n, dtype=int)
    z[:20] = 1
    p = np.clip(rng.uniform(0.05, 0.95, n), 0, 1)
    return X, z, p


def _by_column(findings: list[ValidationWarning], column) -> list[ValidationWarning]:
    return [w for w in findings if w.column == column]


# ---------------------------------------------------------------------------
# Clean path
# ---------------------------------------------------------------------------


def test_clean_inputs_no_warnings():
    X, z, _ = _clean_inputs()
    findings = validate_match_inputs(X[["age", "income"]], z)
    assert [w for w in findings if w.severity != "info"] == []


def test_findings_are_namedtuples():
    X, z, _ = _clean_inputs()
    X.loc[0, "age"] = np.nan
    w = validate_match_inputs(X, z)[0]
    assert isinstance(w, ValidationWarning)
    assert w.severity in {"info", "warning", "error"}


# ---------------------------------------------------------------------------
# Supply
# ---------------------------------------------------------------------------


def test_supply_shortfall_is_error():
    X, z, _ = _clean_inputs()
    findings = validate_match_inputs(X[["age"]], z, controls=5)
    errors = _by_column(findings, "__dataset__")
    assert errors and errors[0].severity == "error"


def test_thin_pool_is_info():
    X, z, _ = _clean_inputs()
    findings = validate_match_inputs(X[["age"]], z, controls=3)
    dataset = _by_column(findings, "__dataset__")
    assert dataset and dataset[0].severity == "info"


# ---------------------------------------------------------------------------
# Covariates
# ---------------------------------------------------------------------------


def test_null_covariate_flagged():
    X, z, _ = _clean_inputs()
    X.loc[:4, "income"] = np.nan
    findings = _by_column(validate_match_inputs(X, z), "income")
    assert findings[0].severity == "warning"
    assert "null" in findings[0].message


def test_mostly_null_covariate_is_error():
    X, z, _ = _clean_inputs()
    X.loc[:70, "income"] = np.nan
    findings = _by_column(validate_match_inputs(X, z), "income")
    assert findings[0].severity == "error"


def test_constant_covariate_flagged():
    X, z, _ = _clean_inputs()
    X["flag"] = 1
    findings = _by_column(validate_match_inputs(X, z), "flag")
    assert len(findings) == 1
    assert "constant" in findings[0].message


def test_numpy_covariates_use_positions():
    _, z, _ = _clean_inputs()
    X = np.column_stack([np.arange(100.0), np.zeros(100)])
    findings = _by_column(validate_match_inputs(X, z), 1)
    assert len(findings) == 1


# ---------------------------------------------------------------------------
# Exact-match strata
# ---------------------------------------------------------------------------


def test_exact_strata_short_of_controls():
    X, z, _ = _clean_inputs()
    X["site"] = "b"
    X.loc[:19, "site"] = "a"  # every treated unit in 'a', no control in 'a'
    findings = _by_column(validate_match_inputs(X, z, exact=["site"]), "site")
    assert findings and findings[0].severity == "error"
    assert "('a',)" in findings[0].message


def test_exact_strata_balanced_is_clean():
    X, z, _ = _clean_inputs()
    X["site"] = np.where(np.arange(100) % 2 == 0, "a", "b")
    assert _by_column(validate_match_inputs(X, z, exact="site"), "site") == []


# ---------------------------------------------------------------------------
# Propensity
# ---------------------------------------------------------------------------


def test_propensity_out_of_range_is_error():
    X, z, p = _clean_inputs()
    p[3] = 1.5
    findings = _by_column(validate_match_inputs(X, z, propensity=p), "propensity")
    assert findings[0].severity == "error"


def test_propensity_without_overlap_warns():
    X, z, _ = _clean_inputs()
    p = np.where(z == 1, 0.9, 0.1)
    p[0] = 0.1
    findings = _by_column(validate_match_inputs(X, z, propensity=p), "propensity")
    assert findings[0].severity == "warning"
    assert "95.0%" in findings[0].message


def test_propensity_length_mismatch_raises():
    X, z, p = _clean_inputs()
    with pytest.raises(ConfigurationError, match="Propensity"):
        validate_match_inputs(X, z, propensity=p[:10])


# ---------------------------------------------------------------------------
# Hard failures
# ---------------------------------------------------------------------------


def test_empty_covariates_raise():
    with pytest.raises(ConfigurationError, match="empty"):
        validate_match_inputs(pd.DataFrame(), np.array([1, 0]))


def test_length_mismatch_raises():
    X, z, _ = _clean_inputs()
    with pytest.raises(ConfigurationError, match="rows"):
        validate_match_inputs(X.iloc[:50], z)
