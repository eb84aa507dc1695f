"""Permutation tests on model coefficients.

Two complementary tests:

* :func:`coef_test` — for every coefficient a term adds to its reduced
  model, the length of its coefficient vector (across response
  variables) is compared with its permutation distribution.  The
  distributions come from the term-specific pseudo-responses already
  evaluated by the engine, so no new permutations are run.
* :func:`beta_test` — each selected coefficient of the complete model
  is tested against a hypothesised vector ``β``.  The null model drops
  only that coefficient; ``β`` is subtracted from the observed
  coefficients only, so the permutation distribution describes
  coefficients of length zero under the null.  Optionally a
  Mahalanobis distance scaled by the residual covariance of every
  pseudo-response is reported as well.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

import numpy as np
import pandas as pd
from scipy import linalg

from ._backends import resolve_backend
from ._linalg import safe_inverse
from ._results import BetaTestResult, CoefficientTestResult, LmRRPP
from .executors import chunk_ranges
from .pvalues import effect_sizes, permutation_p_values

logger = logging.getLogger(__name__)


def coef_test(lm: LmRRPP, confidence: float = 0.95) -> CoefficientTestResult:
    """Test the length of each coefficient a term adds to its reduced model.

    Args:
        lm: Analysis fitted with ``compute_coefficients=True``.
        confidence: Quantile of the permutation distribution reported
            as the upper confidence limit.

    Returns:
        :class:`~rrpp._results.CoefficientTestResult` with columns
        ``d.obs``, ``UCL (xx%)``, ``Zd`` and ``Pr(>d)``.

    Raises:
        ValueError: If coefficients were not retained or *confidence*
            is not in (0, 1).
    """
    if not 0.0 < confidence < 1.0:
        raise ValueError("confidence must lie strictly between 0 and 1.")
    result = lm.permutations
    if result.coefficient_distances is None:
        raise ValueError(
            "Coefficient distributions are not available; rerun lm_rrpp "
            "with compute_coefficients=True."
        )
    d = result.coefficient_distances
    labels = list(result.distance_labels)
    index = pd.MultiIndex.from_tuples(labels, names=["term", "coefficient"])
    if d.shape[0]:
        ucl = np.quantile(d, confidence, axis=1)
        z = effect_sizes(d)
        p = permutation_p_values(d)
    else:
        ucl = z = p = np.empty(0)
    table = pd.DataFrame(
        {
            "d.obs": d[:, 0] if d.shape[0] else np.empty(0),
            f"UCL ({100 * confidence:g}%)": ucl,
            "Zd": z,
            "Pr(>d)": p,
        },
        index=index,
    )
    return CoefficientTestResult(table=table, distances=d, labels=labels, confidence=confidence)


def _coefficient_rows(names: Sequence[str], coef_no: Any) -> list[int]:
    if coef_no is None:
        return list(range(len(names)))
    items = [coef_no] if isinstance(coef_no, (int, np.integer, str)) else list(coef_no)
    rows = []
    for item in items:
        if isinstance(item, str):
            if item not in names:
                msg = f"Unknown coefficient {item!r}. Available: {list(names)}."
                raise ValueError(msg)
            rows.append(names.index(item))
        else:
            i = int(item)
            if not 0 <= i < len(names):
                msg = f"coef_no {i} is out of range for {len(names)} coefficients."
                raise ValueError(msg)
            rows.append(i)
    return rows


def beta_test(
    lm: LmRRPP,
    coef_no: int | str | Sequence[int | str] | None = None,
    beta: Any = None,
    include_md: bool = False,
) -> BetaTestResult:
    """Test complete-model coefficients against a hypothesised vector.

    For coefficient *c*, the null model is the complete model without
    column *c*.  Pseudo-responses are its fitted values plus permuted
    residuals, and ``b = (R⁻¹Q'y*)[c]`` is recomputed for every row of
    the analysis' permutation schedule.

    Args:
        lm: A fitted analysis.
        coef_no: Coefficient index (0-based into the complete model's
            coefficients), name, or a sequence of either.  Default: all.
        beta: Hypothesised coefficient vector of length *p*
            (default zeros).
        include_md: Also compute the Mahalanobis distance
            ``√(b S⁻¹ b')`` with ``S = R'R / (n − k)`` from each
            pseudo-response's residuals.

    Returns:
        :class:`~rrpp._results.BetaTestResult`.

    Raises:
        ValueError: For an unknown coefficient or a *beta* of the wrong
            length.
    """
    mf = lm.model_fit
    names = list(mf.coefficient_names)
    rows = _coefficient_rows(names, coef_no)
    n, p = lm.n_obs, lm.n_responses
    k = mf.rank

    beta_vec = np.zeros(p) if beta is None else np.asarray(beta, dtype=float).ravel()
    if beta_vec.size == 1 and p > 1:
        beta_vec = np.repeat(beta_vec, p)
    if beta_vec.shape != (p,):
        msg = f"beta must have one value per response variable ({p}), got {beta_vec.size}."
        raise ValueError(msg)

    Y = lm.response - lm.offset if lm.offset is not None else lm.response
    TY = lm.transform.apply(Y)
    TX = lm.transform.apply(mf.design.values[:, mf.kept])
    Qf, Hb = mf.basis, mf.hat
    be = resolve_backend(lm.context.backend if lm.context is not None else None)
    indices = lm.schedule.indices
    total = indices.shape[0]
    chunk = max(1, min(500, 2_000_000 // max(1, n * p)))

    d = np.empty((len(rows), total))
    md = np.empty((len(rows), total)) if include_md else None
    for r, c in enumerate(rows):
        Xr = np.delete(TX, c, axis=1)
        if Xr.shape[1]:
            Qr, _ = linalg.qr(Xr, mode="economic")
            fitted = Qr @ (Qr.T @ TY)
        else:
            fitted = np.zeros_like(TY)
        resid = TY - fitted
        for span in chunk_ranges(total, chunk):
            y = fitted[None] + resid[indices[span.start:span.stop]]
            b = be.batch_apply(Hb, y)[:, c, :]
            if span.start == 0:
                b[0] = b[0] - beta_vec
            d[r, span.start:span.stop] = np.linalg.norm(b, axis=1)
            if md is not None:
                E = y - be.batch_project(Qf, y)
                S = np.einsum("bni,bnj->bij", E, E) / (n - k)
                for i in range(b.shape[0]):
                    S_inv = safe_inverse(S[i], policy="pinv").matrix
                    md[r, span.start + i] = np.sqrt(max(b[i] @ S_inv @ b[i], 0.0))

    columns: dict[str, np.ndarray] = {
        "d.obs": d[:, 0],
        "Zd": effect_sizes(d),
        "Pr(>d)": permutation_p_values(d),
    }
    if md is not None:
        columns.update(
            {"md.obs": md[:, 0], "Zmd": effect_sizes(md), "Pr(>md)": permutation_p_values(md)}
        )
    selected = [names[c] for c in rows]
    logger.debug("Tested %d coefficient(s) against beta=%s.", len(rows), beta_vec)
    return BetaTestResult(
        table=pd.DataFrame(columns, index=selected),
        coefficients=selected,
        beta=beta_vec,
        d=d,
        md=md,
    )


__all__ = ["coef_test", "beta_test"]
