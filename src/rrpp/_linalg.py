"""Small linear-algebra helpers shared by the fitter, SSCP and diagnostics.

Inversion fallback policy
~~~~~~~~~~~~~~~~~~~~~~~~~
:func:`safe_inverse` never raises inside the permutation loop unless the
caller asks it to.  It tries, in order:

1. ``scipy.linalg.inv`` when the condition number is below ``1 / tol``;
2. ``scipy.linalg.pinv`` (Moore–Penrose generalized inverse);
3. shrinkage toward a scaled identity,
   ``(1 - λ) A + λ · mean(diag A) · I``, with the smallest λ on a fixed
   grid that yields a well-conditioned matrix.

The method actually used is returned alongside the matrix so callers
can flag the affected permutation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
from scipy import linalg

from .exceptions import SingularCovarianceError

logger = logging.getLogger(__name__)

_SHRINKAGE_GRID = np.arange(0.005, 1.0 + 1e-12, 0.005)

_VALID_POLICIES = {"pinv", "shrinkage", "raise"}


@dataclass(frozen=True)
class InverseResult:
    """Inverse of a square matrix and how it was obtained."""

    matrix: np.ndarray
    method: str
    """``"inverse"``, ``"pinv"``, or ``"shrinkage"``."""

    @property
    def exact(self) -> bool:
        return self.method == "inverse"


def zapsmall(x: np.ndarray, digits: int = 7) -> np.ndarray:
    """Round values that are negligible relative to the largest magnitude.

    Values are rounded to
    ``max(0, digits - log10(max|x|))`` decimal places.
    """
    x = np.asarray(x, dtype=float)
    finite = np.abs(x[np.isfinite(x)])
    if finite.size == 0:
        return x
    mx = finite.max()
    if mx <= 0:
        return x
    decimals = max(0, digits - int(np.ceil(np.log10(mx))))
    return np.round(x, decimals)


def _well_conditioned(A: np.ndarray, tol: float) -> bool:
    if not np.all(np.isfinite(A)):
        return False
    return bool(np.linalg.cond(A) < 1.0 / tol)


def _shrink(A: np.ndarray, tol: float) -> np.ndarray | None:
    scale = float(np.mean(np.diag(A)))
    if not np.isfinite(scale) or scale <= 0:
        scale = 1.0
    target = scale * np.eye(A.shape[0])
    for lam in _SHRINKAGE_GRID:
        shrunk = (1.0 - lam) * A + lam * target
        if _well_conditioned(shrunk, tol):
            return linalg.inv(shrunk)
    return None


def safe_inverse(
    A: np.ndarray,
    *,
    policy: str = "pinv",
    tol: float = 1e-10,
) -> InverseResult:
    """Invert a square matrix following an explicit fallback policy.

    Args:
        A: Square matrix.
        policy: ``"pinv"`` (inverse, then pseudo-inverse),
            ``"shrinkage"`` (inverse, then shrinkage toward identity),
            or ``"raise"`` (inverse only).
        tol: Reciprocal condition-number threshold below which the
            exact inverse is rejected.

    Returns:
        :class:`InverseResult`.

    Raises:
        SingularCovarianceError: If the exact inverse is rejected and
            *policy* is ``"raise"``, or the shrinkage fallback fails.
        ValueError: If *policy* is unknown or *A* is not square.
    """
    if policy not in _VALID_POLICIES:
        msg = f"Unknown inversion policy {policy!r}. Choose from: {sorted(_VALID_POLICIES)}"
        raise ValueError(msg)
    A = np.asarray(A, dtype=float)
    if A.ndim != 2 or A.shape[0] != A.shape[1]:
        msg = f"Expected a square matrix, got shape {A.shape}."
        raise ValueError(msg)

    if _well_conditioned(A, tol):
        return InverseResult(linalg.inv(A), "inverse")

    if policy == "raise":
        raise SingularCovarianceError(
            f"Matrix of shape {A.shape} is singular or ill-conditioned."
        )

    if policy == "pinv" and np.all(np.isfinite(A)):
        logger.debug("Exact inverse rejected; using pseudo-inverse.")
        return InverseResult(linalg.pinv(A), "pinv")

    inv = _shrink(A, tol)
    if inv is None:
        raise SingularCovarianceError(
            "Shrinkage toward identity did not produce an invertible matrix."
        )
    logger.debug("Exact inverse rejected; using shrinkage toward identity.")
    return InverseResult(inv, "shrinkage")


def independent_columns(X: np.ndarray, tol: float = 1e-7) -> np.ndarray:
    """Return indices of the linearly independent columns of *X*, in order.

    A column is kept when the norm of its residual after projection on
    the previously kept columns exceeds ``tol`` times its own norm.
    Earlier columns therefore always win, so an intercept placed first
    is never dropped in favour of a later column.

    Args:
        X: Matrix of shape ``(n, q)``.
        tol: Relative tolerance.

    Returns:
        Integer array of kept column indices (possibly empty).
    """
    X = np.asarray(X, dtype=float)
    n, q = X.shape
    basis = np.empty((n, 0))
    kept: list[int] = []
    for j in range(q):
        col = X[:, j]
        norm = np.linalg.norm(col)
        if norm == 0.0:
            continue
        resid = col - basis @ (basis.T @ col)
        # Second Gram–Schmidt pass for numerical orthogonality.
        resid = resid - basis @ (basis.T @ resid)
        rnorm = np.linalg.norm(resid)
        if rnorm > tol * norm:
            basis = np.column_stack([basis, resid / rnorm])
            kept.append(j)
    return np.asarray(kept, dtype=np.intp)


def inverse_sqrt_psd(
    cov: np.ndarray,
    tol: float = 1e-7,
) -> tuple[np.ndarray, np.ndarray, float]:
    """Symmetric inverse square root of a covariance matrix.

    Non-positive-definite inputs are shrunk toward a scaled identity
    using the smallest grid weight that lifts the minimum eigenvalue
    above ``tol`` times the maximum.

    Returns:
        ``(P, P_inv, lam)`` with ``P = cov^-1/2``, ``P_inv = cov^1/2``
        and *lam* the shrinkage weight used (0 when none).

    Raises:
        SingularCovarianceError: If no shrinkage weight works.
    """
    cov = np.asarray(cov, dtype=float)
    cov = (cov + cov.T) / 2.0
    scale = float(np.mean(np.diag(cov)))
    if not np.isfinite(scale) or scale <= 0:
        raise SingularCovarianceError(
            "Covariance matrix must have a positive, finite diagonal."
        )

    lam = 0.0
    target = cov
    vals, vecs = linalg.eigh(target)
    if vals.min() <= tol * vals.max():
        for lam in _SHRINKAGE_GRID:
            target = (1.0 - lam) * cov + lam * scale * np.eye(cov.shape[0])
            vals, vecs = linalg.eigh(target)
            if vals.min() > tol * vals.max():
                break
        else:
            raise SingularCovarianceError(
                "Covariance matrix is not positive definite and could not be regularized."
            )

    root = np.sqrt(vals)
    P = (vecs / root) @ vecs.T
    P_inv = (vecs * root) @ vecs.T
    return P, P_inv, float(lam)
