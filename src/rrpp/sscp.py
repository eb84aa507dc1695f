"""Multivariate (SSCP) statistics for RRPP analyses.

:func:`manova_update` re-uses the residual pools and permutation
schedule of an existing :class:`~rrpp._results.LmRRPP` and, for every
permutation, forms per-term sums of squares and cross-products
matrices instead of scalar SS:

* ``H = (Ŷ_full − Ŷ_reduced)'(Ŷ_full − Ŷ_reduced)`` for each term;
* ``R = (y* − Ŷ_model)'(y* − Ŷ_model)`` (complete-model residuals);
* a ``"Full.Model"`` entry comparing the complete model against the
  intercept-only model on the intercept-only pseudo-response.

The eigenvalues of ``R⁻¹H`` feed the classical test statistics (Roy,
Pillai, Hotelling–Lawley, Wilks), whose permutation distributions
replace the F approximations of parametric MANOVA.

When there are more response variables than the residual degrees of
freedom can support, ``R`` is singular.  The responses are first
replaced by principal-component scores (scikit-learn ``PCA``) when that
reduces their number, and any remaining singular ``R`` is inverted with
the fallback policy of :func:`~rrpp._linalg.safe_inverse`; the method
used is recorded per term and permutation.
"""

from __future__ import annotations

import logging
import warnings
from collections.abc import Callable

import numpy as np
import pandas as pd
from sklearn.decomposition import PCA

from ._backends import resolve_backend
from ._linalg import safe_inverse, zapsmall
from ._results import LmRRPP, ManovaResult
from ._strategies import resolve_strategy
from .engine import ProjectorCache, ResidualPool
from .exceptions import SingularCovarianceWarning
from .executors import Executor, chunk_ranges, resolve_executor, run_with_progress
from .pvalues import effect_sizes, permutation_p_values

logger = logging.getLogger(__name__)

FULL_MODEL = "Full.Model"

_TESTS = ("Roy", "Pillai", "Hotelling-Lawley", "Wilks")


def _pca_truncate(
    Y: np.ndarray, pc_no: int | None, tol: float
) -> tuple[np.ndarray, int, bool]:
    """Principal-component scores of *Y* when they reduce its dimension."""
    n, p = Y.shape
    max_comp = min(n - 1, p)
    pca = PCA(n_components=max_comp, svd_solver="full")
    scores = pca.fit_transform(Y)
    sd = np.sqrt(pca.explained_variance_)
    keep = int(np.sum(sd > tol * sd[0])) if sd.size and sd[0] > 0 else 0
    if pc_no is not None:
        if pc_no < 1:
            raise ValueError("pc_no must be a positive integer.")
        keep = min(keep, int(pc_no))
    keep = max(keep, 1)
    if keep < p:
        logger.debug("Responses replaced by %d of %d principal components.", keep, p)
        return scores[:, :keep], keep, True
    return Y, p, False


def _eigen(H: np.ndarray, R: np.ndarray) -> tuple[np.ndarray, str]:
    inv = safe_inverse(R, policy="pinv")
    vals = np.real(np.linalg.eigvals(inv.matrix @ H))
    return np.sort(vals)[::-1], inv.method


def _crossprod(M: np.ndarray) -> np.ndarray:
    return np.einsum("bni,bnj->bij", M, M)


def manova_update(
    lm: LmRRPP,
    pc_no: int | None = None,
    tol: float = 1e-7,
    keep_sscp: bool = True,
    backend: str | None = None,
    executor: Executor | str | None = None,
    n_jobs: int = 1,
    progress: Callable[[int, int], None] | None = None,
) -> ManovaResult:
    """Compute per-permutation SSCP matrices and eigenvalues.

    Args:
        lm: A multivariate analysis from :func:`~rrpp.core.lm_rrpp`.
        pc_no: Optional cap on the number of principal components kept.
        tol: Components whose standard deviation is at most ``tol``
            times the first component's are dropped.
        keep_sscp: Store the ``H`` and ``R`` matrices on the result.
        backend: Backend for the batch projections.
        executor: Executor for the permutation chunks.
        n_jobs: Worker count when *executor* is ``None``.
        progress: ``progress(done, total)`` callback.

    Returns:
        :class:`~rrpp._results.ManovaResult`.

    Warns:
        SingularCovarianceWarning: Once, when any residual SSCP matrix
            needed a fallback inverse.

    Raises:
        ValueError: If the response has fewer than two variables.
    """
    if lm.n_responses < 2:
        msg = (
            f"Multivariate statistics need at least 2 response variables; "
            f"the analysis has {lm.n_responses}."
        )
        raise ValueError(msg)

    Y = lm.response - lm.offset if lm.offset is not None else lm.response
    Y, n_comp, truncated = _pca_truncate(Y, pc_no, tol)

    cache = ProjectorCache.from_decomposition(
        Y, lm.decomposition, lm.transform, tol=tol
    )
    Yt = lm.transform.apply(Y)
    pools = resolve_strategy(lm.randomization).residual_pools(Yt, cache)
    null_fitted = cache.null.project(Yt)
    null_pool = ResidualPool(null_fitted, Yt - null_fitted)

    be = resolve_backend(backend if backend is not None else (
        lm.context.backend if lm.context is not None else None
    ))
    ex = resolve_executor(executor, n_jobs)
    k = len(cache.terms)
    degenerate = np.array(
        [r.rank == f.rank for r, f in zip(cache.reduced, cache.full, strict=True)],
        dtype=bool,
    )

    def _run_chunk(rows: range) -> dict[str, np.ndarray]:
        perm = lm.schedule.indices[rows.start:rows.stop]
        b = perm.shape[0]
        H = np.empty((k + 1, b, n_comp, n_comp))
        R = np.empty((k + 1, b, n_comp, n_comp))
        for j in range(k):
            y = pools[j].pseudo_responses(perm)
            if rows.start == 0:
                y[0] = Yt
            fit_f = be.batch_project(cache.full[j].basis, y)
            if degenerate[j]:
                H[j] = 0.0
            else:
                fit_r = be.batch_project(cache.reduced[j].basis, y)
                H[j] = _crossprod(fit_f - fit_r)
            R[j] = _crossprod(y - be.batch_project(cache.model.basis, y))

        y0 = null_pool.pseudo_responses(perm)
        total = _crossprod(y0 - be.batch_project(cache.null.basis, y0))
        R[k] = _crossprod(y0 - be.batch_project(cache.model.basis, y0))
        H[k] = total - R[k]

        eig = np.empty((k + 1, b, n_comp))
        methods = np.empty((k + 1, b), dtype=object)
        for j in range(k + 1):
            for i in range(b):
                eig[j, i], methods[j, i] = _eigen(H[j, i], R[j, i])
        return {"eig": eig, "methods": methods, "H": H, "R": R}

    total = lm.schedule.n_permutations
    n, p = Yt.shape
    chunk = max(1, min(500, 2_000_000 // max(1, n * p * (k + 1))))
    parts = run_with_progress(ex, _run_chunk, chunk_ranges(total, chunk), total, progress)

    def _cat(key: str) -> np.ndarray:
        return np.concatenate([part[key] for part in parts], axis=1)

    eig = _cat("eig")
    methods = _cat("methods")
    fallbacks = int(np.sum(methods != "inverse"))
    if fallbacks:
        logger.debug("%d SSCP inversion(s) used a fallback.", fallbacks)
        warnings.warn(
            f"{fallbacks} of {methods.size} residual SSCP matrices were singular "
            f"and inverted through a fallback; consider a smaller pc_no.",
            SingularCovarianceWarning,
            stacklevel=2,
        )

    df = np.append(lm.permutations.df, cache.model.rank - cache.null.rank)
    return ManovaResult(
        terms=list(cache.terms) + [FULL_MODEL],
        eigenvalues=eig,
        df=df,
        df_residual=lm.permutations.df_residual,
        n_components=n_comp,
        pca_truncated=truncated,
        inversion_methods=methods,
        H=_cat("H") if keep_sscp else None,
        R=_cat("R") if keep_sscp else None,
    )


def _positive(eigs: np.ndarray) -> np.ndarray:
    flat = eigs.reshape(-1, eigs.shape[-1])
    out = np.zeros_like(flat)
    for i, e in enumerate(flat):
        z = zapsmall(e)
        out[i] = np.where(z > 0, e, 0.0)
    return out.reshape(eigs.shape)


def multivariate_statistics(eigs: np.ndarray) -> dict[str, np.ndarray]:
    """Roy, Pillai, Hotelling–Lawley and Wilks statistics.

    Only eigenvalues that remain positive after :func:`zapsmall` count.

    Args:
        eigs: Eigenvalues along the last axis, e.g. the
            ``(k + 1, B + 1, p')`` array of a :class:`ManovaResult`.

    Returns:
        Mapping of test name to an array of the leading shape.
    """
    e = _positive(np.asarray(eigs, dtype=float))
    return {
        "Roy": e.max(axis=-1),
        "Pillai": np.sum(e / (1.0 + e), axis=-1),
        "Hotelling-Lawley": e.sum(axis=-1),
        "Wilks": np.prod(1.0 / (1.0 + e), axis=-1),
    }


def summary_manova(manova: ManovaResult, test: str = "Pillai") -> pd.DataFrame:
    """Permutation MANOVA table for one test statistic.

    Wilks' lambda shrinks as effects grow, so it is tested in the lower
    tail; the reported Z is then the effect size of ``-Wilks``.
    """
    if test not in _TESTS:
        msg = f"Unknown test '{test}'. Choose from: {', '.join(_TESTS)}."
        raise ValueError(msg)
    stat = multivariate_statistics(manova.eigenvalues)[test]
    tested = -stat if test == "Wilks" else stat
    return pd.DataFrame(
        {
            "Df": manova.df.astype(int),
            "Residual Df": manova.df_residual,
            test: stat[:, 0],
            "Z": effect_sizes(tested),
            f"Pr(>{test})": permutation_p_values(tested),
        },
        index=manova.terms,
    )


__all__ = ["manova_update", "multivariate_statistics", "summary_manova", "FULL_MODEL"]
