"""Treated-to-control distance kernels.

Every kernel maps one treated covariate vector and a matrix of control
covariate vectors to one distance per control row::

    kernel(controls, treated) -> ndarray, shape (n_controls,)

Built-in kernels:

``maha``
    Squared Mahalanobis distance using the covariance of the full covariate
    matrix (all units), applied through its Cholesky factor.
``robust maha``
    Same, computed on column ranks whose covariance is rescaled so every
    rank column carries the variance of the untied ranks ``1..n``.
    Robust to outliers and heavy tails (Rosenbaum 2010, ch. 8).
``Hamming``, ``L1``, ``0/1``
    Count of differing positions, sum of absolute differences, and an
    all-equal indicator.
``L1_convex``, ``vanilla_directional``, ``hockey_stick``, ``0/1/directional``
    One-sided costs on ``s = sum(treated - control)`` scaled by ``alpha``.
    They only reward or penalize controls lying on one side of the treated
    unit, and are used to encode one-directional balance objectives.
``other``
    A caller-supplied function with the kernel signature.

References:
    Rosenbaum (2010). Design of Observational Studies. Springer.
    Zhang, Small, Heng, Pimentel (2021). Matching one sample according to
        two criteria in observational studies. JASA.
"""

from __future__ import annotations

from enum import Enum
from typing import Callable

import numpy as np
import pandas as pd
from scipy import linalg
from scipy.stats import rankdata

from .errors import ConfigurationError

DistFunc = Callable[[np.ndarray, np.ndarray], np.ndarray]


class DistanceMethod(str, Enum):
    """Names accepted by :func:`make_kernel`."""

    MAHA = "maha"
    ROBUST_MAHA = "robust maha"
    HAMMING = "Hamming"
    L1 = "L1"
    ZERO_ONE = "0/1"
    L1_CONVEX = "L1_convex"
    VANILLA_DIRECTIONAL = "vanilla_directional"
    HOCKEY_STICK = "hockey_stick"
    ZERO_ONE_DIRECTIONAL = "0/1/directional"
    OTHER = "other"


def as_matrix(X) -> np.ndarray:
    """Return ``X`` as a 2-D float array (a vector becomes one column)."""
    if isinstance(X, (pd.DataFrame, pd.Series)):
        X = X.to_numpy()
    try:
        arr = np.asarray(X, dtype=float)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError("Covariates must be numeric.") from exc
    if arr.ndim == 1:
        arr = arr.reshape(-1, 1)
    if arr.ndim != 2:
        raise ConfigurationError(
            f"Covariates must be a vector or a 2-D matrix; got {arr.ndim} dimensions."
        )
    return arr


# ---------------------------------------------------------------------------
# Kernel classes
# ---------------------------------------------------------------------------


class DistanceKernel:
    """Base class. Subclasses implement :meth:`__call__`."""

    method: DistanceMethod

    def prepare(self, X: np.ndarray) -> np.ndarray:
        """Return the covariate matrix the kernel expects to be sliced from."""
        return X

    def __call__(self, controls: np.ndarray, treated: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    @staticmethod
    def _diff(controls: np.ndarray, treated: np.ndarray) -> np.ndarray:
        return np.atleast_2d(controls) - np.asarray(treated, dtype=float).ravel()


class Mahalanobis(DistanceKernel):
    """Squared Mahalanobis distance under the full-sample covariance."""

    method = DistanceMethod.MAHA

    def __init__(self, X: np.ndarray):
        self._chol = _cholesky(np.cov(X, rowvar=False))

    def __call__(self, controls: np.ndarray, treated: np.ndarray) -> np.ndarray:
        diff = self._diff(controls, treated)
        z = linalg.solve_triangular(self._chol, diff.T, lower=True)
        return np.sum(z * z, axis=0)


class RobustMahalanobis(Mahalanobis):
    """Rank-based Mahalanobis distance; tied ranks are averaged."""

    method = DistanceMethod.ROBUST_MAHA

    def __init__(self, X: np.ndarray):
        ranks = self.prepare(X)
        n = ranks.shape[0]
        cv = np.atleast_2d(np.cov(ranks, rowvar=False))
        v_untied = float(np.var(np.arange(1, n + 1), ddof=1))
        diag = np.diag(cv)
        if np.any(diag <= 0):
            raise ConfigurationError(
                "robust maha needs every covariate to take at least two values."
            )
        rat = np.sqrt(v_untied / diag)
        cv = np.diag(rat) @ cv @ np.diag(rat)
        self._chol = _cholesky(cv)

    def prepare(self, X: np.ndarray) -> np.ndarray:
        return rankdata(X, axis=0)


class Hamming(DistanceKernel):
    method = DistanceMethod.HAMMING

    def __call__(self, controls, treated):
        return np.sum(self._diff(controls, treated) != 0, axis=1).astype(float)


class L1(DistanceKernel):
    method = DistanceMethod.L1

    def __call__(self, controls, treated):
        return np.sum(np.abs(self._diff(controls, treated)), axis=1)


class ZeroOne(DistanceKernel):
    method = DistanceMethod.ZERO_ONE

    def __call__(self, controls, treated):
        return np.any(self._diff(controls, treated) != 0, axis=1).astype(float)


class _Directional(DistanceKernel):
    """Shared plumbing: ``s = sum(treated - control)`` per control row."""

    def __init__(self, alpha: float = 1.0):
        self.alpha = float(alpha)

    def _signed(self, controls, treated) -> np.ndarray:
        return -np.sum(self._diff(controls, treated), axis=1)


class L1Convex(_Directional):
    method = DistanceMethod.L1_CONVEX

    def __call__(self, controls, treated):
        return self.alpha * self._signed(controls, treated)


class VanillaDirectional(L1Convex):
    method = DistanceMethod.VANILLA_DIRECTIONAL


class HockeyStick(_Directional):
    """Zero until the treated unit exceeds the control, linear afterwards."""

    method = DistanceMethod.HOCKEY_STICK

    def __call__(self, controls, treated):
        s = np.maximum(self._signed(controls, treated), 0.0)
        return self.alpha * (s - 0.01)


class ZeroOneDirectional(_Directional):
    method = DistanceMethod.ZERO_ONE_DIRECTIONAL

    def __call__(self, controls, treated):
        s = (self._signed(controls, treated) > 0).astype(float)
        return self.alpha * (s - 0.01)


class Custom(DistanceKernel):
    """Wraps a user function ``dist_func(controls, treated)``."""

    method = DistanceMethod.OTHER

    def __init__(self, dist_func: DistFunc):
        if not callable(dist_func):
            raise ConfigurationError("method='other' requires a callable dist_func.")
        self.dist_func = dist_func

    def __call__(self, controls, treated):
        controls = np.atleast_2d(controls)
        out = np.asarray(self.dist_func(controls, treated), dtype=float).ravel()
        if out.shape[0] != controls.shape[0]:
            raise ConfigurationError(
                f"dist_func returned {out.shape[0]} distances for "
                f"{controls.shape[0]} controls."
            )
        return out


def _cholesky(cov: np.ndarray) -> np.ndarray:
    cov = np.atleast_2d(cov)
    try:
        return linalg.cholesky(cov, lower=True)
    except linalg.LinAlgError as exc:
        raise ConfigurationError(
            "Covariance matrix is not positive definite; remove constant or "
            "collinear covariates before using a Mahalanobis distance."
        ) from exc


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

_SIMPLE = {
    DistanceMethod.HAMMING: Hamming,
    DistanceMethod.L1: L1,
    DistanceMethod.ZERO_ONE: ZeroOne,
}

_DIRECTIONAL = {
    DistanceMethod.L1_CONVEX: L1Convex,
    DistanceMethod.VANILLA_DIRECTIONAL: VanillaDirectional,
    DistanceMethod.HOCKEY_STICK: HockeyStick,
    DistanceMethod.ZERO_ONE_DIRECTIONAL: ZeroOneDirectional,
}


def make_kernel(
    method: str | DistanceMethod,
    X=None,
    alpha: float = 1.0,
    dist_func: DistFunc | None = None,
) -> DistanceKernel:
    """Select and initialise a distance kernel.

    Args:
        method: One of the :class:`DistanceMethod` values (e.g. ``"maha"``).
        X: Full covariate matrix (all units). Required by the Mahalanobis
            kernels, which estimate a covariance from it.
        alpha: Tuning constant for the directional kernels.
        dist_func: User function for ``method="other"``.

    Returns:
        A callable :class:`DistanceKernel`.

    Raises:
        ConfigurationError: Unknown method, missing ``X`` or ``dist_func``,
            or a singular covariance matrix.
    """
    try:
        method = DistanceMethod(method)
    except ValueError:
        valid = ", ".join(repr(m.value) for m in DistanceMethod)
        raise ConfigurationError(
            f"Unknown distance method {method!r}. Choose from {valid}."
        ) from None

    if method in (DistanceMethod.MAHA, DistanceMethod.ROBUST_MAHA):
        if X is None:
            raise ConfigurationError(f"method={method.value!r} needs the covariate matrix X.")
        X = as_matrix(X)
        if method is DistanceMethod.MAHA:
            return Mahalanobis(X)
        return RobustMahalanobis(X)
    if method in _SIMPLE:
        return _SIMPLE[method]()
    if method in _DIRECTIONAL:
        return _DIRECTIONAL[method](alpha)
    return Custom(dist_func)
