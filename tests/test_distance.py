"""Tests for flowmatch/distance.py -- distance kernels.

Tests cover:
- Mahalanobis on one covariate reduces to squared difference over variance
- Mahalanobis is invariant to rescaling a covariate
- Robust Mahalanobis is invariant to monotone transforms of a covariate
- Hamming, L1 and 0/1 on small hand-checked inputs
- Directional kernels: sign, hockey-stick floor, 0/1 step, alpha scaling
- User kernels: passed through, length checked
- make_kernel: method lookup, unknown names, singular covariance
"""

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from flowmatch.distance import (
    DistanceMethod,
    HockeyStick,
    Mahalanobis,
    as_matrix,
    make_kernel,
)
from flowmatch.errors import ConfigurationError


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def _covariates(n: int = 50, seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return np.column_stack([
        rng.normal(0.0, 1.0, n),
        rng.normal(5.0, 2.0, n),
        rng.uniform(0.0, 1.0, n),
    ])


# ---------------------------------------------------------------------------
# as_matrix
# ---------------------------------------------------------------------------


def test_as_matrix_vector_becomes_column():
    assert as_matrix([1, 2, 3]).shape == (3, 1)


def test_as_matrix_accepts_dataframe():
    df = pd.DataFrame({"a": [1.0, 2.0], "b": [3.0, 4.0]})
    np.testing.assert_array_equal(as_matrix(df), [[1.0, 3.0], [2.0, 4.0]])


def test_as_matrix_rejects_text():
    with pytest.raises(ConfigurationError, match="numeric"):
        as_matrix(["a", "b"])


# ---------------------------------------------------------------------------
# Mahalanobis
# ---------------------------------------------------------------------------


def test_maha_one_covariate_matches_scaled_square():
    X = np.array([0.0, 1.0, 5.0, 6.0, 7.0])
    kernel = make_kernel("maha", X)
    var = np.var(X, ddof=1)
    got = kernel(X[2:].reshape(-1, 1), X[:1])
    np.testing.assert_allclose(got, (X[2:] - X[0]) ** 2 / var)


def test_maha_invariant_to_column_scaling():
    X = _covariates()
    scaled = X * np.array([10.0, 0.5, 3.0])
    d1 = make_kernel("maha", X)(X[10:], X[0])
    d2 = make_kernel("maha", scaled)(scaled[10:], scaled[0])
    np.testing.assert_allclose(d1, d2, rtol=1e-8)


def test_maha_zero_for_identical_rows():
    X = _covariates()
    kernel = make_kernel(DistanceMethod.MAHA, X)
    assert kernel(X[3:4], X[3])[0] == pytest.approx(0.0)


def test_maha_singular_covariance_raises():
    X = np.column_stack([np.arange(10.0), np.ones(10)])
    with pytest.raises(ConfigurationError, match="positive definite"):
        make_kernel("maha", X)


def test_maha_requires_x():
    with pytest.raises(ConfigurationError, match="needs the covariate matrix"):
        make_kernel("maha")


# ---------------------------------------------------------------------------
# Robust Mahalanobis
# ---------------------------------------------------------------------------


def test_robust_maha_invariant_to_monotone_transform():
    X = _covariates()
    transformed = X.copy()
    transformed[:, 1] = np.exp(transformed[:, 1])

    k1 = make_kernel("robust maha", X)
    k2 = make_kernel("robust maha", transformed)
    R1, R2 = k1.prepare(X), k2.prepare(transformed)
    np.testing.assert_allclose(k1(R1[5:], R1[0]), k2(R2[5:], R2[0]))


def test_robust_maha_prepare_returns_ranks():
    X = np.array([[10.0], [30.0], [20.0], [20.0]])
    ranks = make_kernel("robust maha", X).prepare(X)
    np.testing.assert_array_equal(ranks.ravel(), [1.0, 4.0, 2.5, 2.5])


def test_robust_maha_constant_column_raises():
    X = np.column_stack([np.arange(10.0), np.zeros(10)])
    with pytest.raises(ConfigurationError, match="at least two values"):
        make_kernel("robust maha", X)


# ---------------------------------------------------------------------------
# Simple kernels
# ---------------------------------------------------------------------------


def test_hamming_counts_differences():
    controls = np.array([[1, 2, 3], [1, 0, 0], [1, 2, 4]])
    got = make_kernel("Hamming")(controls, np.array([1, 2, 3]))
    np.testing.assert_array_equal(got, [0.0, 2.0, 1.0])


def test_l1_sums_absolute_differences():
    controls = np.array([[0.0, 0.0], [1.0, -1.0]])
    got = make_kernel("L1")(controls, np.array([1.0, 1.0]))
    np.testing.assert_allclose(got, [2.0, 2.0])


def test_zero_one_indicator():
    controls = np.array([[1, 1], [1, 2]])
    got = make_kernel("0/1")(controls, np.array([1, 1]))
    np.testing.assert_array_equal(got, [0.0, 1.0])


# ---------------------------------------------------------------------------
# Directional kernels
# ---------------------------------------------------------------------------


CONTROLS = np.array([[0.0], [2.0], [5.0]])
TREATED = np.array([3.0])


def test_l1_convex_signed_difference():
    got = make_kernel("L1_convex", alpha=2.0)(CONTROLS, TREATED)
    np.testing.assert_allclose(got, [6.0, 2.0, -4.0])


def test_vanilla_directional_equals_l1_convex():
    a = make_kernel("vanilla_directional", alpha=1.5)(CONTROLS, TREATED)
    b = make_kernel("L1_convex", alpha=1.5)(CONTROLS, TREATED)
    np.testing.assert_allclose(a, b)


def test_hockey_stick_floors_negative_side():
    got = HockeyStick(alpha=1.0)(CONTROLS, TREATED)
    np.testing.assert_allclose(got, [2.99, 0.99, -0.01])


def test_zero_one_directional_step():
    got = make_kernel("0/1/directional", alpha=10.0)(CONTROLS, TREATED)
    np.testing.assert_allclose(got, [9.9, 9.9, -0.1])


# ---------------------------------------------------------------------------
# User kernels and factory
# ---------------------------------------------------------------------------


def test_custom_kernel_is_called():
    def squared(controls, treated):
        return np.sum((controls - treated) ** 2, axis=1)

    got = make_kernel("other", dist_func=squared)(CONTROLS, TREATED)
    np.testing.assert_allclose(got, [9.0, 1.0, 4.0])


def test_custom_kernel_wrong_length_raises():
    kernel = make_kernel("other", dist_func=lambda c, t: np.zeros(1))
    with pytest.raises(ConfigurationError, match="returned 1 distances"):
        kernel(CONTROLS, TREATED)


def test_custom_kernel_needs_callable():
    with pytest.raises(ConfigurationError, match="callable"):
        make_kernel("other")


def test_unknown_method_raises():
    with pytest.raises(ConfigurationError, match="Unknown distance method"):
        make_kernel("euclidean", _covariates())


def test_make_kernel_returns_mahalanobis_class():
    assert isinstance(make_kernel("maha", _covariates()), Mahalanobis)
