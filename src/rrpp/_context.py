"""Computation context — mutable accumulator for one analysis.

A :class:`FitContext` is created by :func:`~rrpp.core.lm_rrpp` and
passed explicitly to the engine, which records what it resolved along
the way (estimation kind, rank truncation, degenerate terms, backend,
executor, seed).  It is never shared between analyses and never
global.  Result serialisation (``to_dict``) skips it.

Lifecycle::

    lm_rrpp()
    ├─ ctx = FitContext()
    ├─ decompose(...)            → ctx.dropped_columns, ctx.truncated_terms
    ├─ schedule(...)             → ctx.seed, ctx.n_permutations
    ├─ RRPPEngine(..., ctx=ctx)  → ctx.estimation, ctx.backend,
    │                              ctx.executor, ctx.degenerate_terms
    └─ LmRRPP(..., context=ctx)
"""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np


@dataclass
class FitContext:
    """Mutable accumulator for analysis metadata.

    Every field defaults to ``None`` (or an empty container) so the
    context can be filled incrementally.
    """

    # ---- Inputs --------------------------------------------------
    n_obs: int | None = None
    n_responses: int | None = None
    response_names: list[str] = field(default_factory=list)
    term_labels: list[str] = field(default_factory=list)

    # ---- Design --------------------------------------------------
    ss_type: str | None = None
    nominal_columns: int | None = None
    rank: int | None = None
    dropped_columns: list[str] = field(default_factory=list)
    truncated_terms: list[str] = field(default_factory=list)
    degenerate_terms: list[str] = field(default_factory=list)

    # ---- Estimation ----------------------------------------------
    estimation: str | None = None
    """``"ols"``, ``"wls"``, or ``"gls"``."""

    covariance_regularization: float = 0.0
    has_offset: bool = False

    # ---- Permutation metadata ------------------------------------
    randomization: str | None = None
    seed: int | None = None
    n_permutations: int | None = None
    blocks: np.ndarray | None = None
    unique_permutations: bool | None = None

    # ---- Execution -----------------------------------------------
    backend: str | None = None
    executor: str | None = None
    chunk_size: int | None = None

    # ---- Warnings ------------------------------------------------
    warnings_captured: list[str] = field(default_factory=list)
    """Warning messages raised during the analysis."""


__all__ = ["FitContext"]
