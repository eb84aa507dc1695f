"""ANOVA statistics assembled from permutation distributions.

:func:`anova_parts` turns the raw SS distributions of a
:class:`~rrpp._results.PermutationResult` into the usual ANOVA
quantities, permutation by permutation:

* ``MS = SS / df`` with ``df = rank(full) − rank(reduced)``;
* ``F = MS / (RSS / df_residual)`` where RSS is the complete-model
  residual SS of the term's own pseudo-response, or ``MS / MS_error``
  when another term is chosen as the error term (mixed-model style
  tests, e.g. testing a fixed factor against a nested random factor);
* ``Rsq = SS / TSS``;
* Cohen's f²: ``η / (1 − η)`` for type III, otherwise
  ``η / (1 − cumsum(η))`` so that each term is judged against the
  variance left unexplained by the terms before it.

:func:`anova` picks one of these as the test statistic and reports
one-tailed p-values and Z scores from its distribution.
:func:`compare_models` evaluates several competing models against a
reference model over the reference model's permutation schedule.
"""

from __future__ import annotations

import itertools
import logging
import warnings
from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np
import pandas as pd

from ._backends import resolve_backend
from ._linalg import zapsmall
from ._results import AnovaResult, LmRRPP, ModelComparisonResult, PermutationResult
from .design import SSType
from .executors import chunk_ranges
from .pvalues import effect_sizes, permutation_p_value, permutation_p_values

logger = logging.getLogger(__name__)

_EFFECT_TYPES = ("F", "cohenf", "SS", "MS", "Rsq")

_RESIDUALS = "Residuals"


@dataclass(frozen=True, eq=False)
class AnovaParts:
    """Per-term ANOVA distributions, each ``(k, B + 1)``."""

    terms: list[str]
    df: np.ndarray
    df_residual: int
    df_total: int
    SS: np.ndarray
    MS: np.ndarray
    RSS: np.ndarray
    TSS: np.ndarray
    RSS_model: np.ndarray
    Rsq: np.ndarray
    F: np.ndarray
    cohenf: np.ndarray
    error_terms: list[str] | None = None

    def statistic(self, name: str) -> np.ndarray:
        return getattr(self, name)


def _resolve_error_terms(
    terms: list[str], error: Sequence[str | None] | None
) -> list[str] | None:
    if error is None:
        return None
    error = list(error)
    if len(error) != len(terms):
        msg = f"error must name one error term per model term ({len(terms)}), got {len(error)}."
        raise ValueError(msg)
    resolved = []
    for term, err in zip(terms, error, strict=True):
        err = _RESIDUALS if err is None else str(err)
        if err != _RESIDUALS and err not in terms:
            msg = f"Error term {err!r} for {term!r} is not a model term or 'Residuals'."
            raise ValueError(msg)
        if err == term:
            msg = f"Term {term!r} cannot be its own error term."
            raise ValueError(msg)
        resolved.append(err)
    return resolved


def anova_parts(
    result: PermutationResult,
    error: Sequence[str | None] | None = None,
) -> AnovaParts:
    """Compute ANOVA distributions from raw SS distributions.

    Args:
        result: Engine output.
        error: Optional error term per model term (another term's
            label, or ``"Residuals"`` / ``None`` for the default).

    Returns:
        :class:`AnovaParts`.  Degenerate terms have NaN ``MS``, ``F``
        and ``cohenf``.
    """
    terms = list(result.terms)
    errors = _resolve_error_terms(terms, error)
    df = np.asarray(result.df, dtype=float)
    dfe = result.df_residual
    SS = result.ss
    TSS = result.tss

    with np.errstate(divide="ignore", invalid="ignore"):
        Rsq = SS / TSS[None, :]
        MS = SS / df[:, None]
        RMS = result.rss / dfe
        F = MS / RMS
        if errors is not None:
            for j, err in enumerate(errors):
                if err != _RESIDUALS:
                    F[j] = MS[j] / MS[terms.index(err)]

        if result.ss_type is SSType.MARGINAL:
            cohenf = Rsq / (1.0 - Rsq)
        else:
            cohenf = Rsq / (1.0 - np.cumsum(Rsq, axis=0))

    degenerate = df == 0
    MS[degenerate] = np.nan
    F[degenerate] = np.nan
    cohenf[degenerate] = np.nan

    return AnovaParts(
        terms=terms,
        df=result.df.copy(),
        df_residual=dfe,
        df_total=result.df_total,
        SS=SS,
        MS=MS,
        RSS=result.rss,
        TSS=TSS,
        RSS_model=result.rss_model,
        Rsq=Rsq,
        F=F,
        cohenf=cohenf,
        error_terms=errors,
    )


def _check_effect_type(effect_type: str, generalized: bool) -> str:
    if effect_type not in _EFFECT_TYPES:
        msg = f"Invalid effect_type '{effect_type}'. Choose from: {', '.join(_EFFECT_TYPES)}."
        raise ValueError(msg)
    if generalized and effect_type in ("SS", "MS"):
        warnings.warn(
            f"effect_type '{effect_type}' is not comparable across permutations "
            f"for weighted or GLS fits; using 'F' instead.",
            UserWarning,
            stacklevel=3,
        )
        return "F"
    return effect_type


def anova(
    lm: LmRRPP,
    effect_type: str = "F",
    error: Sequence[str | None] | None = None,
    log_effect: bool = False,
) -> AnovaResult:
    """ANOVA table with permutation p-values and effect sizes.

    Args:
        lm: A fitted analysis from :func:`~rrpp.core.lm_rrpp`.
        effect_type: Statistic to test: ``"F"``, ``"cohenf"``, ``"SS"``,
            ``"MS"`` or ``"Rsq"``.
        error: Optional error term per model term (see
            :func:`anova_parts`).
        log_effect: Log-transform distributions before computing Z.

    Returns:
        :class:`~rrpp._results.AnovaResult`.
    """
    effect_type = _check_effect_type(effect_type, lm.transform.is_generalized)
    parts = anova_parts(lm.permutations, error=error)
    stat = parts.statistic(effect_type)

    if parts.terms:
        p_values = permutation_p_values(stat)
        z_scores = effect_sizes(stat, log=log_effect)
    else:
        p_values = np.empty(0)
        z_scores = np.empty(0)

    rss0 = float(parts.RSS_model[0])
    tss0 = float(parts.TSS[0])
    p_label = f"Pr(>{effect_type})"
    rows = []
    for j, term in enumerate(parts.terms):
        rows.append(
            {
                "Df": int(parts.df[j]),
                "SS": parts.SS[j, 0],
                "MS": parts.MS[j, 0],
                "Rsq": parts.Rsq[j, 0],
                "F": parts.F[j, 0],
                "Z": z_scores[j],
                p_label: p_values[j],
            }
        )
    rows.append(
        {
            "Df": parts.df_residual,
            "SS": rss0,
            "MS": rss0 / parts.df_residual,
            "Rsq": rss0 / tss0 if tss0 else np.nan,
            "F": np.nan,
            "Z": np.nan,
            p_label: np.nan,
        }
    )
    rows.append(
        {"Df": parts.df_total, "SS": tss0, "MS": np.nan, "Rsq": np.nan,
         "F": np.nan, "Z": np.nan, p_label: np.nan}
    )
    table = pd.DataFrame(rows, index=parts.terms + [_RESIDUALS, "Total"])

    return AnovaResult(
        table=table,
        effect_type=effect_type,
        terms=parts.terms,
        distributions={
            "SS": parts.SS,
            "MS": parts.MS,
            "Rsq": parts.Rsq,
            "F": parts.F,
            "cohenf": parts.cohenf,
        },
        p_values=p_values,
        z_scores=z_scores,
        error_terms=parts.error_terms,
        n_permutations=lm.schedule.n_permutations,
        estimation=lm.estimation,
    )


# ------------------------------------------------------------------ #
# Multi-model comparison
# ------------------------------------------------------------------ #


def _floor_zero(M: np.ndarray) -> np.ndarray:
    M = M.copy()
    finite = np.isfinite(M)
    zapped = np.zeros_like(M)
    zapped[finite] = zapsmall(M[finite])
    M[finite & (zapped == 0)] = 1e-32
    return M


def _same_transform(a, b) -> bool:
    """True when two row transforms are the same map (``None`` is OLS)."""
    if a.matrix is None or b.matrix is None:
        return a.matrix is None and b.matrix is None
    return a.matrix.shape == b.matrix.shape and np.allclose(a.matrix, b.matrix)


def compare_models(
    reference: LmRRPP,
    *models: LmRRPP,
    effect_type: str = "F",
    names: Sequence[str] | None = None,
) -> ModelComparisonResult:
    """Compare competing models against a reference (null) model.

    Pseudo-responses are built from the reference model's fitted values
    and permuted residuals, using the reference's schedule, and
    projected through each model's cached basis.  No model is refitted.

    Args:
        reference: The null model, usually the simplest.
        *models: Competing models fitted to the same response.
        effect_type: ``"F"`` (also used for ``"cohenf"``), ``"SS"``,
            ``"MS"`` or ``"Rsq"``.
        names: Row labels for *models*.

    Returns:
        :class:`~rrpp._results.ModelComparisonResult`; row 0 is the
        reference and carries no test.

    Raises:
        ValueError: If no models are given or models do not share the
            reference's response, schedule and weights or covariance.
    """
    if not models:
        raise ValueError("At least one model must be compared with the reference.")
    if effect_type == "cohenf":
        effect_type = "F"
    effect_type = _check_effect_type(effect_type, reference.transform.is_generalized)

    names = list(names) if names is not None else [f"model{i + 1}" for i in range(len(models))]
    if len(names) != len(models):
        raise ValueError("names must have one entry per compared model.")
    for name, m in zip(names, models, strict=True):
        if m.response.shape != reference.response.shape or not np.allclose(
            m.response, reference.response
        ):
            msg = f"Model {name!r} was fitted to a different response."
            raise ValueError(msg)
        if not m.schedule.compatible_with(reference.schedule):
            msg = (
                f"Model {name!r} was analysed with a different permutation "
                f"schedule; refit with the reference's iterations, seed and blocks."
            )
            raise ValueError(msg)
        if m.transform.kind is not reference.transform.kind:
            msg = f"Model {name!r} uses {m.estimation} estimation; the reference uses {reference.estimation}."
            raise ValueError(msg)
        if not _same_transform(m.transform, reference.transform):
            msg = (
                f"Model {name!r} was fitted with different weights or residual "
                f"covariance than the reference."
            )
            raise ValueError(msg)

    ref_fit = reference.model_fit
    Y = reference.response
    if reference.offset is not None:
        Y = Y - reference.offset
    Yt = reference.transform.apply(Y)
    Yh = ref_fit.project(Yt)
    R = Yt - Yh
    U0 = reference.null_fit.basis
    yh0 = reference.null_fit.project(Yt)
    r0 = Yt - yh0
    bases = [ref_fit.basis] + [m.model_fit.basis for m in models]

    be = resolve_backend(reference.context.backend if reference.context else None)
    indices = reference.schedule.indices
    total = indices.shape[0]
    rss = np.empty((len(bases), total))
    tss = np.empty(total)
    n, p = Yt.shape
    chunk = max(1, min(500, 2_000_000 // max(1, n * p)))
    for rows in chunk_ranges(total, chunk):
        perm = indices[rows.start:rows.stop]
        y = Yh[None] + R[perm]
        y0 = yh0[None] + r0[perm]
        yy = np.einsum("bnp,bnp->b", y, y)
        for i, U in enumerate(bases):
            rss[i, rows.start:rows.stop] = yy - be.batch_projected_ss(U, y)
        tss[rows.start:rows.stop] = (
            np.einsum("bnp,bnp->b", y0, y0) - be.batch_projected_ss(U0, y0)
        )

    ranks = np.array([b.shape[1] for b in bases])
    dfe = n - ranks
    df = (dfe[0] - dfe).astype(float)
    df[0] = 1.0

    with np.errstate(divide="ignore", invalid="ignore"):
        SS = rss[0][None, :] - rss
        Rsq = SS / tss[None, :]
        MS = SS / df[:, None]
        MSE = rss / dfe[:, None]
        F = MS / MSE

    SS, MS, Rsq, F = (_floor_zero(M) for M in (SS, MS, Rsq, F))
    stats = {"SS": SS, "MS": MS, "Rsq": Rsq, "F": F}
    stat = stats[effect_type]
    p_values = permutation_p_values(stat)
    z_scores = effect_sizes(stat)
    p_values[0] = np.nan
    z_scores[0] = np.nan
    SS[0] = np.nan
    MS[0] = np.nan

    labels = ["reference"] + names
    table = pd.DataFrame(
        {
            "ResDf": dfe,
            "Df": np.where(np.arange(len(bases)) == 0, np.nan, df),
            "RSS": rss[:, 0],
            "SS": SS[:, 0],
            "MS": MS[:, 0],
            "Rsq": np.where(np.arange(len(bases)) == 0, np.nan, Rsq[:, 0]),
            "F": np.where(np.arange(len(bases)) == 0, np.nan, F[:, 0]),
            "Z": z_scores,
            f"Pr(>{effect_type})": p_values,
        },
        index=labels,
    )
    logger.debug("Compared %d model(s) over %d permutations.", len(models), total)
    return ModelComparisonResult(
        table=table,
        effect_type=effect_type,
        models=labels,
        distributions={"RSS": rss, "SS": SS, "Rsq": Rsq, "F": F, "MS": MS},
        p_values=p_values,
        z_scores=z_scores,
    )


def compare_effect_sizes(comparison: ModelComparisonResult) -> tuple[pd.DataFrame, pd.DataFrame]:
    """Pairwise two-sample Z tests between the compared models' effects.

    For models *a* and *b* with centred statistic distributions ``x``
    and ``y``, the per-permutation deviate is
    ``(x − y) / √(var x + var y)``; its absolute observed value is the
    test statistic and the p-value comes from the absolute deviates.
    The reference row is excluded.

    Returns:
        ``(Z, P)`` symmetric DataFrames indexed by model name.

    Raises:
        ValueError: If fewer than two models were compared.
    """
    stat = comparison.distributions[comparison.effect_type][1:]
    names = comparison.models[1:]
    if len(names) < 2:
        raise ValueError("At least two compared models are required.")
    centred = stat - stat.mean(axis=1, keepdims=True)
    var = centred.var(axis=1, ddof=1)

    m = len(names)
    Z = np.zeros((m, m))
    P = np.zeros((m, m))
    for a, b in itertools.combinations(range(m), 2):
        with np.errstate(divide="ignore", invalid="ignore"):
            dev = (centred[a] - centred[b]) / np.sqrt(var[a] + var[b])
        Z[a, b] = Z[b, a] = abs(dev[0])
        P[a, b] = P[b, a] = permutation_p_value(np.abs(dev))
    return (
        pd.DataFrame(Z, index=names, columns=names),
        pd.DataFrame(P, index=names, columns=names),
    )


__all__ = [
    "AnovaParts",
    "anova_parts",
    "anova",
    "compare_models",
    "compare_effect_sizes",
]
