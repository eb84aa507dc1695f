"""RRPP engine — observed fits, residual pools, and the permutation loop.

The :class:`RRPPEngine` does everything that depends on the observed
data exactly once:

1. **Observed fits** — one :class:`~rrpp.fitting.Fit` per distinct
   design (reduced and full model of every term, the complete model,
   and the intercept-only model).  Identical designs share one fit.
2. **Residual pools** — the randomization strategy turns the observed
   fits into one ``(fitted, residuals)`` pool per term.
3. **Backend / executor resolution**.

:meth:`RRPPEngine.run` then walks the permutation schedule in chunks.
For a chunk of row orderings ``π`` the pseudo-responses of term *j* are
``y* = fitted_j + residuals_j[π]`` and the engine records

* ``SS_reduced = ‖U_r' y*‖²`` and ``SS_full = ‖U_f' y*‖²``,
* term ``SS = SS_full − SS_reduced``,
* term ``RSS = ‖y*‖² − ‖U_m' y*‖²`` (complete model),

plus, shared by all terms and computed from the intercept-only
pseudo-response ``y₀*``,

* ``TSS = ‖y₀*‖² − ‖U₀' y₀*‖²`` and ``RSS_model = ‖y₀*‖² − ‖U_m' y₀*‖²``.

Sums of squares come from projector norms, never from refitting: each
``U`` is the orthonormal basis cached on the observed fit.  In
coefficient mode the full model's coefficient operator ``H = R⁻¹Q'``
is applied to every pseudo-response as well.

Chunks are independent and read only shared, immutable arrays, so any
executor may run them in any order; results are re-assembled in
schedule order, keeping the observed statistic at index 0.
"""

from __future__ import annotations

import logging
import warnings
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import numpy as np

from ._backends import BackendProtocol, resolve_backend
from ._compat import _as_matrix
from ._context import FitContext
from ._results import PermutationResult
from ._strategies import RandomizationStrategy, resolve_strategy
from .design import DesignDecomposition, DesignMatrix
from .exceptions import DegenerateTermWarning, DesignError
from .executors import Executor, chunk_ranges, resolve_executor, run_with_progress
from .fitting import CovarianceTransform, Fit, fit
from .permutations import PermutationSchedule

logger = logging.getLogger(__name__)

# Target number of float64 cells in one chunk's pseudo-response batch.
_CHUNK_CELLS = 2_000_000
_MAX_CHUNK = 500


@dataclass(frozen=True, eq=False)
class ResidualPool:
    """Fitted values and residuals (transformed space) that form ``y*``."""

    fitted: np.ndarray
    residuals: np.ndarray

    def pseudo_responses(self, perm_rows: np.ndarray) -> np.ndarray:
        """``fitted + residuals[π]`` for every row of *perm_rows*, ``(b, n, p)``."""
        return self.fitted[None, :, :] + self.residuals[perm_rows]


@dataclass(frozen=True, eq=False)
class ProjectorCache:
    """Read-only observed fits shared by every permutation."""

    terms: tuple[str, ...]
    reduced: tuple[Fit, ...]
    full: tuple[Fit, ...]
    model: Fit
    null: Fit

    @classmethod
    def from_decomposition(
        cls,
        Y: np.ndarray,
        decomposition: DesignDecomposition,
        transform: CovarianceTransform,
        offset: np.ndarray | None = None,
        tol: float = 1e-7,
    ) -> ProjectorCache:
        """Fit every distinct design of *decomposition* once."""
        memo: list[tuple[DesignMatrix, Fit]] = []

        def _fit(design: DesignMatrix) -> Fit:
            for seen, cached in memo:
                if seen is design or (
                    seen.same_columns(design)
                    and np.array_equal(seen.values, design.values)
                ):
                    return cached
            result = fit(design, Y, covariance_transform=transform, offset=offset, tol=tol)
            memo.append((design, result))
            return result

        model = _fit(decomposition.design)
        null = _fit(decomposition.intercept_design)
        reduced = tuple(_fit(pair.reduced) for pair in decomposition.pairs.values())
        full = tuple(_fit(pair.full) for pair in decomposition.pairs.values())
        logger.debug("Fitted %d distinct design(s) for %d term(s).", len(memo), len(reduced))
        return cls(tuple(decomposition.pairs), reduced, full, model, null)

    def added_rows(self, j: int) -> list[int]:
        """Rows of term *j*'s full coefficients that are absent from its reduced model."""
        reduced = set(self.reduced[j].coefficient_names)
        return [
            i for i, name in enumerate(self.full[j].coefficient_names)
            if name not in reduced
        ]


def _default_chunk_size(n: int, p: int, n_terms: int) -> int:
    per_row = max(1, n * p * max(1, n_terms))
    return int(min(_MAX_CHUNK, max(1, _CHUNK_CELLS // per_row)))


class RRPPEngine:
    """Permutation engine over a fixed decomposition and schedule.

    The engine is immutable after construction: the observed fits,
    residual pools and schedule it captures are shared read-only by
    all workers.

    Attributes:
        cache: Observed fits (:class:`ProjectorCache`).
        pools: One :class:`ResidualPool` per term.
        null_pool: Intercept-only pool used for TSS and RSS_model.
        degenerate: Boolean mask of terms whose reduced and full
            models coincide.
    """

    def __init__(
        self,
        Y: Any,
        decomposition: DesignDecomposition,
        *,
        schedule: PermutationSchedule,
        transform: CovarianceTransform | None = None,
        offset: Any = None,
        randomization: str = "rrpp",
        compute_coefficients: bool = True,
        backend: str | None = None,
        executor: Executor | str | None = None,
        n_jobs: int = 1,
        chunk_size: int | None = None,
        progress: Callable[[int, int], None] | None = None,
        tol: float = 1e-7,
        ctx: FitContext | None = None,
    ) -> None:
        self.ctx: FitContext = ctx if ctx is not None else FitContext()

        # ---- Inputs -----------------------------------------------
        Y_values, names = _as_matrix(Y, name="y")
        n, p = Y_values.shape
        if decomposition.n_obs != n:
            msg = f"Design has {decomposition.n_obs} rows but the response has {n}."
            raise DesignError(msg)
        if schedule.n_obs != n:
            msg = f"Schedule permutes {schedule.n_obs} rows but the response has {n}."
            raise ValueError(msg)
        if not np.all(np.isfinite(Y_values)):
            raise ValueError("Response contains missing or non-finite values.")

        self.Y = Y_values
        self.decomposition = decomposition
        self.schedule = schedule
        self.transform = transform if transform is not None else CovarianceTransform.identity(n)
        self.compute_coefficients = compute_coefficients
        self.progress = progress

        # ---- Strategy ---------------------------------------------
        self.strategy: RandomizationStrategy = resolve_strategy(randomization)
        required = self.strategy.required_ss_type
        if required is not None and decomposition.ss_type is not required:
            msg = (
                f"randomization='{self.strategy.name}' requires SS type "
                f"{required.value}, got {decomposition.ss_type.value}."
            )
            raise ValueError(msg)

        # ---- Observed fits ----------------------------------------
        self.offset = None
        if offset is not None:
            off = np.asarray(offset, dtype=float)
            off = off.reshape(-1, 1) if off.ndim == 1 else off
            self.offset = np.broadcast_to(off, Y_values.shape).copy()

        self.cache = ProjectorCache.from_decomposition(
            Y_values, decomposition, self.transform, self.offset, tol=tol
        )
        self._check_nesting()

        y = Y_values - self.offset if self.offset is not None else Y_values
        self.Y_transformed = self.transform.apply(y)

        # ---- Residual pools ---------------------------------------
        self.pools = self.strategy.residual_pools(self.Y_transformed, self.cache)
        null_fitted = self.cache.null.project(self.Y_transformed)
        self.null_pool = ResidualPool(null_fitted, self.Y_transformed - null_fitted)

        # ---- Execution --------------------------------------------
        self._backend: BackendProtocol = resolve_backend(backend)
        self._executor: Executor = resolve_executor(executor, n_jobs)
        self.chunk_size = chunk_size or _default_chunk_size(n, p, len(self.cache.terms))

        self.ctx.estimation = self.transform.kind.value
        self.ctx.covariance_regularization = self.transform.regularization
        self.ctx.randomization = self.strategy.name
        self.ctx.backend = self._backend.name
        self.ctx.executor = self._executor.name
        self.ctx.chunk_size = self.chunk_size
        self.ctx.degenerate_terms = [
            t for t, d in zip(self.cache.terms, self.degenerate, strict=True) if d
        ]

    # ---- Validation ------------------------------------------------

    def _check_nesting(self) -> None:
        ranks_r = np.array([f.rank for f in self.cache.reduced], dtype=int)
        ranks_f = np.array([f.rank for f in self.cache.full], dtype=int)
        bad = [t for t, r, f in zip(self.cache.terms, ranks_r, ranks_f, strict=True) if r > f]
        if bad:
            msg = f"Reduced model has higher rank than full model for term(s) {bad}."
            raise DesignError(msg)
        # Kept columns are re-detected in transformed space, per fit.
        crossed = [
            t for t, r, f in zip(self.cache.terms, self.cache.reduced, self.cache.full, strict=True)
            if not set(r.coefficient_names) <= set(f.coefficient_names)
        ]
        if crossed:
            msg = (
                f"Reduced model is not nested in the full model for term(s) "
                f"{crossed}; its kept columns are missing from the full fit."
            )
            raise DesignError(msg)

        self.df = ranks_f - ranks_r
        self.degenerate = self.df == 0
        for term, deg in zip(self.cache.terms, self.degenerate, strict=True):
            if deg:
                message = (
                    f"Term '{term}' adds no columns to its reduced model; its "
                    f"SS is 0 for every permutation and its F, Z and P are "
                    f"undefined."
                )
                warnings.warn(message, DegenerateTermWarning, stacklevel=4)
                self.ctx.warnings_captured.append(message)

    # ---- Backend / executor ---------------------------------------

    @property
    def backend_name(self) -> str:
        return self._backend.name

    @property
    def executor(self) -> Executor:
        return self._executor

    @property
    def backend(self) -> BackendProtocol:
        return self._backend

    # ---- Permutation loop -----------------------------------------

    def _run_chunk(self, rows: range) -> dict[str, Any]:
        """Statistics for one contiguous block of schedule rows."""
        be = self._backend
        perm = self.schedule.indices[rows.start:rows.stop]
        cache = self.cache
        k = len(cache.terms)
        b = perm.shape[0]

        y0 = self.null_pool.pseudo_responses(perm)
        yy0 = np.einsum("bnp,bnp->b", y0, y0)
        tss = yy0 - be.batch_projected_ss(cache.null.basis, y0)
        rss_model = yy0 - be.batch_projected_ss(cache.model.basis, y0)

        ss_r = np.zeros((k, b))
        ss_f = np.zeros((k, b))
        rss = np.zeros((k, b))
        coefs: list[np.ndarray] | None = [] if self.compute_coefficients else None

        for j in range(k):
            y = self.pools[j].pseudo_responses(perm)
            if rows.start == 0:
                # Row 0 is the observed data under every strategy.
                y[0] = self.Y_transformed
            yy = np.einsum("bnp,bnp->b", y, y)
            full_ss = be.batch_projected_ss(cache.full[j].basis, y)
            ss_f[j] = full_ss
            if self.degenerate[j]:
                ss_r[j] = full_ss
            else:
                ss_r[j] = be.batch_projected_ss(cache.reduced[j].basis, y)
            if cache.full[j] is cache.model:
                rss[j] = yy - full_ss
            else:
                rss[j] = yy - be.batch_projected_ss(cache.model.basis, y)
            if coefs is not None:
                coefs.append(be.batch_apply(cache.full[j].hat, y))

        return {
            "tss": tss,
            "rss_model": rss_model,
            "ss_reduced": ss_r,
            "ss_full": ss_f,
            "rss": rss,
            "coefficients": coefs,
        }

    def run(self) -> PermutationResult:
        """Evaluate every permutation of the schedule.

        Returns:
            A :class:`~rrpp._results.PermutationResult` with the
            observed statistic at index 0 of every distribution.
        """
        total = self.schedule.n_permutations
        chunks = chunk_ranges(total, self.chunk_size)
        logger.debug(
            "Running %d permutation(s) in %d chunk(s) on %s / %s.",
            total, len(chunks), self._backend.name, self._executor.name,
        )
        parts = run_with_progress(
            self._executor, self._run_chunk, chunks, total, self.progress
        )

        def _cat(key: str, axis: int) -> np.ndarray:
            return np.concatenate([part[key] for part in parts], axis=axis)

        tss = _cat("tss", 0)
        rss_model = _cat("rss_model", 0)
        ss_reduced = _cat("ss_reduced", 1)
        ss_full = _cat("ss_full", 1)
        rss = _cat("rss", 1)
        ss = ss_full - ss_reduced
        ss[self.degenerate] = 0.0

        terms = list(self.cache.terms)
        coefficients = coefficient_names = distances = None
        labels: list[tuple[str, str]] = []
        if self.compute_coefficients:
            coefficients = {
                term: np.concatenate([part["coefficients"][j] for part in parts], axis=0)
                for j, term in enumerate(terms)
            }
            coefficient_names = {
                term: list(self.cache.full[j].coefficient_names)
                for j, term in enumerate(terms)
            }
            rows = []
            for j, term in enumerate(terms):
                for i in self.cache.added_rows(j):
                    rows.append(np.linalg.norm(coefficients[term][:, i, :], axis=1))
                    labels.append((term, coefficient_names[term][i]))
            distances = np.vstack(rows) if rows else np.empty((0, total))

        n = self.Y.shape[0]
        return PermutationResult(
            terms=terms,
            ss=ss,
            ss_reduced=ss_reduced,
            ss_full=ss_full,
            rss=rss,
            rss_model=rss_model,
            tss=tss,
            df=self.df.copy(),
            df_residual=n - self.cache.model.rank,
            df_total=n - self.cache.null.rank,
            n_obs=n,
            n_responses=self.Y.shape[1],
            ss_type=self.decomposition.ss_type,
            randomization=self.strategy.name,
            estimation=self.transform.kind.value,
            degenerate_terms=list(self.ctx.degenerate_terms),
            coefficients=coefficients,
            coefficient_names=coefficient_names,
            coefficient_distances=distances,
            distance_labels=labels,
        )


__all__ = ["RRPPEngine", "ProjectorCache", "ResidualPool"]
