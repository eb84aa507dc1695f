"""Linear-model evaluation with randomized residual permutation (RRPP).

:func:`lm_rrpp` is the single entry point that turns a response and a
design into a complete :class:`~rrpp._results.LmRRPP` analysis:

1. **Validation** — response and design are converted to float arrays
   (pandas and Polars inputs are accepted) and checked for matching
   rows and finite values.
2. **Decomposition** — the design is rank-reduced and split into one
   nested (reduced, full) model pair per term according to the SS type.
3. **Estimation** — an optional covariance matrix (GLS) or weights
   (WLS) are resolved into one row transform.
4. **Schedule** — ``iterations + 1`` row orderings, identity first,
   optionally restricted to within-block exchanges.
5. **Engine** — observed fits are computed once and every permutation
   is evaluated by projection.

Warnings raised along the way are re-emitted to the caller and also
recorded on :attr:`LmRRPP.context` so they survive serialisation.

Statistics are assembled afterwards by :func:`~rrpp.anova.anova`,
:func:`~rrpp.anova.compare_models`, :func:`~rrpp.sscp.manova_update`
and :mod:`rrpp.coefficients`, none of which refit anything.

References:
    Collyer, M. L., Sekora, D. J. & Adams, D. C. (2015). A method for
    analysis of phenotypic change for phenotypes described by
    high-dimensional data. *Heredity*, 115, 357–365.

    Collyer, M. L. & Adams, D. C. (2018). RRPP: An R package for fitting
    linear models to high-dimensional data using residual
    randomization. *Methods in Ecology and Evolution*, 9, 1772–1779.
"""

from __future__ import annotations

import logging
import warnings
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any

import numpy as np

from ._compat import _as_matrix
from ._context import FitContext
from ._results import LmRRPP
from .design import DesignMatrix, SSType, decompose
from .engine import RRPPEngine
from .exceptions import DesignError
from .fitting import resolve_transform
from .permutations import schedule

if TYPE_CHECKING:
    from ._typing import ArrayLike, BlockLabels, SeedLike
    from .executors import Executor

logger = logging.getLogger(__name__)


def _as_design(design: Any, n: int) -> DesignMatrix:
    if isinstance(design, DesignMatrix):
        return design
    if isinstance(design, Mapping):
        return DesignMatrix.from_blocks(design, n_obs=n)
    raise TypeError(
        "design must be a DesignMatrix or a mapping of term label to "
        f"columns, got {type(design).__name__}."
    )


def lm_rrpp(
    Y: ArrayLike,
    design: DesignMatrix | Mapping[str, Any],
    *,
    iterations: int = 999,
    ss_type: str | SSType = "I",
    randomization: str = "rrpp",
    seed: SeedLike = None,
    blocks: BlockLabels | None = None,
    covariance: Any = None,
    weights: Any = None,
    offset: Any = None,
    compute_coefficients: bool = True,
    backend: str | None = None,
    executor: Executor | str | None = None,
    n_jobs: int = 1,
    progress: Callable[[int, int], None] | None = None,
    tol: float = 1e-7,
) -> LmRRPP:
    """Fit a linear model and evaluate every term by RRPP.

    Args:
        Y: Response, ``(n,)`` or ``(n, p)``; array, pandas or Polars.
        design: A :class:`~rrpp.design.DesignMatrix`, or an ordered
            mapping of term label to columns (an intercept is added).
        iterations: Number of random permutations; the observed
            ordering is evaluated in addition.
        ss_type: ``"I"`` (sequential), ``"II"`` (hierarchical) or
            ``"III"`` (marginal).
        randomization: ``"rrpp"`` (reduced-model residuals),
            ``"frpp"`` (intercept-only residuals) or ``"ter_braak"``
            (full-model residuals; type III only).
        seed: Integer seed, ``None`` (reproducible default derived
            from *iterations*) or ``"random"``.
        blocks: Optional block label per observation; rows are only
            exchanged within blocks.
        covariance: ``(n, n)`` residual covariance for GLS estimation.
        weights: Positive observation weights for WLS estimation.
        offset: Values subtracted from the response before fitting.
        compute_coefficients: Keep per-permutation coefficients (needed
            by :func:`~rrpp.coefficients.coef_test`).
        backend: ``"numpy"`` or ``"jax"``; default from
            :func:`~rrpp._config.get_backend`.
        executor: Executor instance or name (``"sequential"``,
            ``"threads"``, ``"processes"``).
        n_jobs: Worker count when *executor* is ``None`` or a pool name.
        progress: ``progress(done, total)`` callback.
        tol: Relative tolerance for rank detection.

    Returns:
        :class:`~rrpp._results.LmRRPP`.

    Raises:
        DesignError: For a malformed design or one with no residual
            degrees of freedom.
        ValueError: For invalid responses, schedules or options.
    """
    Y_values, response_names = _as_matrix(Y, name="y")
    n, p = Y_values.shape
    if not np.all(np.isfinite(Y_values)):
        raise ValueError("Response contains missing or non-finite values.")
    design = _as_design(design, n)
    if design.n_obs != n:
        msg = f"Design has {design.n_obs} rows but the response has {n}."
        raise DesignError(msg)

    ctx = FitContext(
        n_obs=n,
        n_responses=p,
        response_names=list(response_names),
        term_labels=list(design.term_labels),
        has_offset=offset is not None,
    )

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        decomposition = decompose(design, ss_type, tol=tol)
        transform = resolve_transform(n, covariance, weights, tol=tol)
        perms = schedule(n, iterations, seed=seed, blocks=blocks)
        engine = RRPPEngine(
            Y_values,
            decomposition,
            schedule=perms,
            transform=transform,
            offset=offset,
            randomization=randomization,
            compute_coefficients=compute_coefficients,
            backend=backend,
            executor=executor,
            n_jobs=n_jobs,
            progress=progress,
            tol=tol,
            ctx=ctx,
        )
        result = engine.run()

    for w in caught:
        message = str(w.message)
        if message not in ctx.warnings_captured:
            ctx.warnings_captured.append(message)
        warnings.warn(message, w.category, stacklevel=2)

    ctx.ss_type = decomposition.ss_type.value
    ctx.nominal_columns = decomposition.nominal_columns
    ctx.rank = decomposition.rank
    ctx.dropped_columns = list(decomposition.dropped_columns)
    ctx.truncated_terms = list(decomposition.truncated_terms)
    ctx.seed = perms.seed
    ctx.n_permutations = perms.n_permutations
    ctx.blocks = perms.blocks
    ctx.unique_permutations = perms.unique

    cache = engine.cache
    logger.debug(
        "lm_rrpp: n=%d, p=%d, %d term(s), %d permutation(s), %s estimation.",
        n, p, len(cache.terms), perms.n_permutations, transform.kind.value,
    )
    return LmRRPP(
        response=Y_values,
        response_names=list(response_names),
        decomposition=decomposition,
        transform=transform,
        schedule=perms,
        model_fit=cache.model,
        null_fit=cache.null,
        reduced_fits=dict(zip(cache.terms, cache.reduced, strict=True)),
        full_fits=dict(zip(cache.terms, cache.full, strict=True)),
        permutations=result,
        randomization=engine.strategy.name,
        offset=engine.offset,
        context=ctx,
    )


__all__ = ["lm_rrpp"]
