"""Least-squares fitting with reusable orthonormal projectors.

A :class:`Fit` is computed once per design on the observed data and
then shared, read-only, by every permutation.  It stores the
orthonormal basis ``Q`` of the (transformed) column space so that the
permutation loop can evaluate ``‖Q'y‖²`` or ``QQ'y`` for thousands of
pseudo-responses without solving another linear system.

Estimation kinds
~~~~~~~~~~~~~~~~
The estimation kind is a tagged variant resolved once, when the
:class:`CovarianceTransform` is built:

* ``OLS`` — identity transform.
* ``WLS`` — rows scaled by ``√w``.
* ``GLS`` — rows premultiplied by ``P = Σ^{-1/2}`` (symmetric inverse
  square root of the supplied covariance).

The design and response are both transformed before the QR
factorisation.  Projectors stay in transformed space; fitted values and
residuals are mapped back with ``P^{-1}`` so that reported quantities
are on the original scale.

References:
    Adams, D. C. & Collyer, M. L. (2018). Phylogenetic ANOVA: group-
    clade aggregation, biological challenges, and a refined permutation
    procedure. *Evolution*, 72, 1204–1215.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from enum import Enum
from typing import Any

import numpy as np
from scipy import linalg

from ._compat import _as_matrix
from ._linalg import independent_columns, inverse_sqrt_psd
from .design import DesignMatrix
from .exceptions import RankDeficiencyError, SingularCovarianceWarning

logger = logging.getLogger(__name__)


class Estimation(str, Enum):
    """How the response and design are transformed before fitting."""

    OLS = "ols"
    WLS = "wls"
    GLS = "gls"


# ------------------------------------------------------------------ #
# CovarianceTransform
# ------------------------------------------------------------------ #


@dataclass(frozen=True, eq=False)
class CovarianceTransform:
    """Row transform that turns WLS/GLS estimation into OLS.

    Attributes:
        kind: Estimation variant.
        n_obs: Number of rows the transform applies to.
        matrix: ``P`` for GLS (``(n, n)``), ``√w`` for WLS (``(n,)``),
            ``None`` for OLS.
        inverse: ``P^{-1}`` for GLS, ``1/√w`` for WLS, ``None`` for OLS.
        regularization: Shrinkage weight applied to a covariance that
            was not positive definite (``0`` when none was needed).
    """

    kind: Estimation
    n_obs: int
    matrix: np.ndarray | None = None
    inverse: np.ndarray | None = None
    regularization: float = 0.0

    @classmethod
    def identity(cls, n_obs: int) -> CovarianceTransform:
        return cls(Estimation.OLS, int(n_obs))

    @classmethod
    def from_weights(cls, weights: Any) -> CovarianceTransform:
        """Weighted least squares with positive observation weights."""
        w = np.asarray(weights, dtype=float).ravel()
        if not np.all(np.isfinite(w)) or np.any(w <= 0):
            raise ValueError("Weights must be positive and finite.")
        sw = np.sqrt(w)
        return cls(Estimation.WLS, w.shape[0], sw, 1.0 / sw)

    @classmethod
    def from_covariance(cls, covariance: Any, tol: float = 1e-7) -> CovarianceTransform:
        """Generalized least squares from an ``(n, n)`` residual covariance.

        Warns:
            SingularCovarianceWarning: If the covariance had to be shrunk
                toward a scaled identity to become positive definite.

        Raises:
            SingularCovarianceError: If no regularization succeeds.
        """
        cov = np.asarray(covariance, dtype=float)
        if cov.ndim != 2 or cov.shape[0] != cov.shape[1]:
            msg = f"Covariance must be a square matrix, got shape {cov.shape}."
            raise ValueError(msg)
        if not np.allclose(cov, cov.T, rtol=1e-8, atol=1e-10):
            raise ValueError("Covariance matrix must be symmetric.")
        P, P_inv, lam = inverse_sqrt_psd(cov, tol=tol)
        if lam > 0:
            warnings.warn(
                f"Covariance matrix is not positive definite; shrunk toward "
                f"a scaled identity with weight {lam:.3f}.",
                SingularCovarianceWarning,
                stacklevel=3,
            )
        return cls(Estimation.GLS, cov.shape[0], P, P_inv, lam)

    # ---- Application -----------------------------------------------

    def apply(self, M: np.ndarray) -> np.ndarray:
        """Map rows of *M* (``(n, ...)``) into transformed space."""
        if self.kind is Estimation.OLS:
            return M
        if self.kind is Estimation.WLS:
            return M * self.matrix.reshape((-1,) + (1,) * (M.ndim - 1))
        return self.matrix @ M

    def invert(self, M: np.ndarray) -> np.ndarray:
        """Map rows of *M* from transformed space back to the original scale."""
        if self.kind is Estimation.OLS:
            return M
        if self.kind is Estimation.WLS:
            return M * self.inverse.reshape((-1,) + (1,) * (M.ndim - 1))
        return self.inverse @ M

    def intercept_column(self) -> np.ndarray:
        """The transformed column of ones, shape ``(n, 1)``."""
        return self.apply(np.ones((self.n_obs, 1)))

    @property
    def is_generalized(self) -> bool:
        return self.kind is not Estimation.OLS


def resolve_transform(
    n_obs: int,
    covariance: Any = None,
    weights: Any = None,
    tol: float = 1e-7,
) -> CovarianceTransform:
    """Resolve covariance / weights inputs into one transform.

    A covariance (matrix or :class:`CovarianceTransform`) takes
    precedence over weights; supplying both emits a warning.
    """
    if covariance is not None and weights is not None:
        warnings.warn(
            "Both a covariance matrix and weights were supplied; the "
            "weights are ignored.",
            UserWarning,
            stacklevel=3,
        )
    if isinstance(covariance, CovarianceTransform):
        transform = covariance
    elif covariance is not None:
        transform = CovarianceTransform.from_covariance(covariance, tol=tol)
    elif weights is not None:
        transform = CovarianceTransform.from_weights(weights)
    else:
        transform = CovarianceTransform.identity(n_obs)

    if transform.n_obs != n_obs:
        msg = (
            f"Covariance/weights describe {transform.n_obs} observations but "
            f"the response has {n_obs}."
        )
        raise ValueError(msg)
    return transform


# ------------------------------------------------------------------ #
# Fit
# ------------------------------------------------------------------ #


@dataclass(frozen=True, eq=False)
class Fit:
    """Immutable result of one least-squares fit.

    ``basis``, ``hat`` and the ``transformed_*`` arrays live in the
    transformed (whitened) space; ``fitted`` and ``residuals`` are on
    the original scale, with any offset included in ``fitted``.
    """

    design: DesignMatrix
    transform: CovarianceTransform
    kept: np.ndarray
    """Indices of the design columns used (independent in transformed space)."""

    basis: np.ndarray
    """Orthonormal basis ``Q`` of shape ``(n, rank)``."""

    r_factor: np.ndarray
    """Upper-triangular ``R`` of shape ``(rank, rank)``."""

    hat: np.ndarray
    """Coefficient operator ``R^{-1} Q'`` of shape ``(rank, n)``."""

    coefficients: np.ndarray
    """``(q, p)`` coefficients; rows of dropped columns are NaN."""

    fitted: np.ndarray
    residuals: np.ndarray
    transformed_fitted: np.ndarray
    transformed_residuals: np.ndarray
    offset: np.ndarray | None = None

    @property
    def rank(self) -> int:
        return self.basis.shape[1]

    @property
    def n_obs(self) -> int:
        return self.basis.shape[0]

    @property
    def df_residual(self) -> int:
        return self.n_obs - self.rank

    @property
    def coefficient_names(self) -> tuple[str, ...]:
        """Names of the columns that carry coefficients (``kept``)."""
        return tuple(self.design.column_names[i] for i in self.kept)

    def project(self, Y: np.ndarray) -> np.ndarray:
        """Fitted values ``QQ'Y`` for a transformed-space response."""
        return self.basis @ (self.basis.T @ Y)

    def projected_ss(self, Y: np.ndarray) -> float:
        """Explained sum of squares ``‖Q'Y‖²`` for a transformed-space response."""
        return float(np.sum((self.basis.T @ Y) ** 2))

    def predict(self, X_new: Any) -> np.ndarray:
        """Predictions on the original scale for new design rows.

        *X_new* must have the same columns as :attr:`design`; offsets
        are not added.
        """
        if isinstance(X_new, DesignMatrix):
            values = X_new.values
        else:
            values, _ = _as_matrix(X_new, name="X_new")
        if values.shape[1] != self.design.n_columns:
            msg = (
                f"X_new has {values.shape[1]} columns; the fitted design "
                f"has {self.design.n_columns}."
            )
            raise ValueError(msg)
        return values[:, self.kept] @ self.coefficients[self.kept]


def _as_design(X: Any) -> DesignMatrix:
    if isinstance(X, DesignMatrix):
        return X
    values, names = _as_matrix(X, name="x")
    return DesignMatrix(values, np.ones(values.shape[1]), ("X",), tuple(names))


def _broadcast_offset(offset: Any, shape: tuple[int, int]) -> np.ndarray:
    off = np.asarray(offset, dtype=float)
    if off.ndim == 1:
        off = off.reshape(-1, 1)
    if off.shape[0] != shape[0]:
        msg = f"offset has {off.shape[0]} rows; the response has {shape[0]}."
        raise ValueError(msg)
    return np.broadcast_to(off, shape).copy()


def fit(
    X: Any,
    Y: Any,
    covariance_transform: Any = None,
    weights: Any = None,
    offset: Any = None,
    tol: float = 1e-7,
) -> Fit:
    """Fit ``Y ~ X`` by (transformed) least squares.

    Args:
        X: :class:`DesignMatrix` or array-like ``(n, q)``.
        Y: Response ``(n,)`` or ``(n, p)``.
        covariance_transform: A :class:`CovarianceTransform` or an
            ``(n, n)`` covariance matrix.  Takes precedence over
            *weights*.
        weights: Positive observation weights ``(n,)``.
        offset: Values subtracted from *Y* before fitting and added
            back to the fitted values.
        tol: Relative tolerance for detecting dependent columns.

    Returns:
        A :class:`Fit`.

    Raises:
        ValueError: If row counts disagree.
        RankDeficiencyError: If *X* has columns but realised rank zero.
    """
    design = _as_design(X)
    Y_values, _ = _as_matrix(Y, name="y")
    n, p = Y_values.shape
    if design.n_obs != n:
        msg = f"X has {design.n_obs} rows but Y has {n}."
        raise ValueError(msg)

    transform = resolve_transform(n, covariance_transform, weights, tol=tol)
    off = _broadcast_offset(offset, (n, p)) if offset is not None else None
    y = Y_values - off if off is not None else Y_values
    TY = transform.apply(y)

    if design.n_columns == 0:
        kept = np.empty(0, dtype=np.intp)
        Q = np.empty((n, 0))
        R = np.empty((0, 0))
    else:
        TX = transform.apply(design.values)
        kept = independent_columns(TX, tol=tol)
        if kept.size == 0:
            msg = (
                f"Design with columns {list(design.column_names)} has rank "
                f"zero; no usable columns remain."
            )
            raise RankDeficiencyError(msg)
        Q, R = linalg.qr(TX[:, kept], mode="economic")

    hat = linalg.solve_triangular(R, Q.T) if R.size else np.empty((0, n))
    coefficients = np.full((design.n_columns, p), np.nan)
    coefficients[kept] = hat @ TY

    t_fitted = Q @ (Q.T @ TY)
    t_resid = TY - t_fitted
    residuals = transform.invert(t_resid)
    fitted = Y_values - residuals

    if kept.size < design.n_columns:
        logger.debug(
            "Fit dropped %d dependent column(s) in transformed space.",
            design.n_columns - kept.size,
        )

    return Fit(
        design=design,
        transform=transform,
        kept=kept,
        basis=Q,
        r_factor=R,
        hat=hat,
        coefficients=coefficients,
        fitted=fitted,
        residuals=residuals,
        transformed_fitted=t_fitted,
        transformed_residuals=t_resid,
        offset=off,
    )


# ------------------------------------------------------------------ #
# Covariance scaling
# ------------------------------------------------------------------ #


def scale_cov(
    cov: Any,
    scale: float = 1.0,
    exponent: float = 1.0,
    scale_diagonal: bool = False,
    scale_only_diagonal: bool = False,
) -> np.ndarray:
    """Rescale the elements of a covariance matrix.

    The off-diagonal elements ``C`` become ``scale * C**exponent``;
    the diagonal ``D`` is left alone unless *scale_diagonal* is set.
    With *scale_only_diagonal* only the diagonal is rescaled.  Useful
    for exploring how strongly a phylogenetic or spatial covariance
    should weigh on a GLS fit.

    Args:
        cov: Square covariance matrix.
        scale: Multiplier.
        exponent: Element-wise power applied before scaling.
        scale_diagonal: Also rescale the diagonal.
        scale_only_diagonal: Rescale the diagonal only.

    Returns:
        The rescaled matrix.

    Raises:
        ValueError: If *cov* is not a square matrix.
    """
    cov = np.asarray(cov, dtype=float)
    if cov.ndim != 2 or cov.shape[0] != cov.shape[1]:
        msg = f"cov must be a square matrix, got shape {cov.shape}."
        raise ValueError(msg)
    D = np.diag(np.diag(cov))
    C = cov - D
    if scale_only_diagonal:
        D = scale * D**exponent
    else:
        C = scale * C**exponent
        if scale_diagonal:
            D = scale * D**exponent
    return C + D


__all__ = [
    "Estimation",
    "CovarianceTransform",
    "resolve_transform",
    "Fit",
    "fit",
    "scale_cov",
]
