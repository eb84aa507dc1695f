"""Model-level diagnostics for RRPP analyses.

Likelihood:

* **Multivariate normal log-likelihood** — the residual covariance
  ``Σ = E'E / n`` (in whitened space for WLS/GLS fits) is projected onto
  its leading principal axes, so that models with more variables than
  observations still get a finite likelihood.  An ill-conditioned
  ``Σ`` (condition number above 1e10) is ridge-regularised toward the
  identity, ``λΣ + (1 − λ)I``, with λ chosen on a 0.005 grid to
  minimise ``−2 logL``.  For WLS and GLS fits the log-determinant of
  the weights or covariance enters the likelihood as well, so values
  are comparable with univariate ``statsmodels`` fits.

* **Covariance trace** — ``Σ ‖Σ_ij‖²``, the summed squared elements of
  the residual covariance, a scale-dependent measure of residual
  dispersion that does not need ``Σ`` to be invertible.

Cross-checks:

* **statsmodels** — for univariate responses the complete model is
  refitted with ``OLS``, ``WLS`` or ``GLS`` and its R², adjusted R²,
  AIC, BIC and log-likelihood are reported next to ours.

* **Classical ANOVA** — parametric F tail probabilities
  (``scipy.stats.f``) alongside the permutation p-values, with flags
  for terms where the two lead to different conclusions.

* **Monte Carlo standard error** — ``√[p̂(1 − p̂) / N]`` for an
  empirical p-value computed from ``N`` equally likely permutations.
"""

from __future__ import annotations

import logging
from typing import Any

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy import stats

from ._linalg import safe_inverse
from ._results import LmRRPP
from .fitting import Estimation, Fit
from .pvalues import permutation_p_values

logger = logging.getLogger(__name__)

_KAPPA_MAX = 1e10
_RIDGE_GRID = np.arange(0.005, 0.995 + 1e-12, 0.005)


def _residual_covariance(fit: Fit) -> np.ndarray:
    E = fit.transformed_residuals
    return E.T @ E / fit.n_obs


def covariance_trace(fit: Fit) -> float:
    """Sum of squared elements of the residual covariance ``E'E / n``."""
    return float(np.sum(_residual_covariance(fit) ** 2))


def _ridge_regularize(cov: np.ndarray, residuals: np.ndarray) -> np.ndarray:
    """Ridge-shrunk covariance ``λΣ + (1 − λ)I`` minimising ``−2 logL``."""
    n, p = residuals.shape
    eye = np.eye(cov.shape[0])
    best, best_val = eye, np.inf
    for lam in _RIDGE_GRID:
        C = lam * cov + (1.0 - lam) * eye
        _, logdet = np.linalg.slogdet(C)
        inv = safe_inverse(C, policy="pinv").matrix
        val = n * p * np.log(2 * np.pi) + n * logdet + np.trace(residuals @ inv @ residuals.T)
        if val < best_val:
            best, best_val = C, val
    return best


def log_likelihood(
    fit: Fit,
    tol: float | None = None,
    pc_no: int | None = None,
) -> dict[str, Any]:
    """Multivariate normal log-likelihood of a fit's residuals.

    Args:
        fit: A :class:`~rrpp.fitting.Fit`.
        tol: Principal axes of the residual covariance whose standard
            deviation is at most ``tol`` times the first are dropped
            (default 0, keep every non-null axis).
        pc_no: Optional cap on the number of axes.

    Returns:
        Dictionary with ``"logL"``, ``"rank"`` (axes used),
        ``"ridge"`` (whether the covariance was regularised) and
        ``"cov_trace"``.
    """
    tol = 0.0 if tol is None else float(tol)
    E = fit.transformed_residuals
    n, p = E.shape
    k = min(n, p)
    if pc_no is not None:
        if int(pc_no) < 1:
            raise ValueError("pc_no must be a positive integer.")
        k = min(int(pc_no), n, p)

    sig = _residual_covariance(fit)
    _, s, vt = np.linalg.svd(sig)
    sdev = s / np.sqrt(max(1, n - 1))
    rank = int(min(np.sum(sdev > sdev[0] * tol), k)) if sdev[0] > 0 else 0
    if rank == 0:
        raise ValueError("Residuals have no variance; the log-likelihood is unbounded.")
    P = E @ vt[:rank].T

    sig = P.T @ P / n
    ridge = bool(np.linalg.cond(sig) > _KAPPA_MAX)
    if ridge:
        logger.debug("Residual covariance is ill-conditioned; applying ridge regularisation.")
        sig = _ridge_regularize(sig, P)
    _, logdet = np.linalg.slogdet(sig)

    ll = -0.5 * (n * rank + n * logdet + n * rank * np.log(2 * np.pi))
    transform = fit.transform
    if transform.kind is Estimation.GLS:
        # log|Cov| = 2 log|Cov^(1/2)|
        ll -= 0.5 * rank * 2.0 * np.linalg.slogdet(transform.inverse)[1]
    elif transform.kind is Estimation.WLS:
        ll += 0.5 * rank * 2.0 * np.sum(np.log(transform.matrix))

    return {
        "logL": float(ll),
        "rank": rank,
        "ridge": ridge,
        "cov_trace": covariance_trace(fit),
    }


def compute_monte_carlo_se(raw_p_values: np.ndarray, n_permutations: int) -> np.ndarray:
    """Monte Carlo standard error ``√[p̂(1 − p̂) / N]`` of empirical p-values.

    *n_permutations* counts every permutation the p-value was computed
    from, the observed ordering included.
    """
    p = np.asarray(raw_p_values, dtype=float)
    result: np.ndarray = np.sqrt(p * (1.0 - p) / n_permutations)
    return result


def _statsmodels_fit(lm: LmRRPP) -> Any:
    mf = lm.model_fit
    exog = mf.design.values[:, mf.kept]
    endog = lm.response[:, 0]
    if lm.offset is not None:
        endog = endog - lm.offset[:, 0]
    transform = lm.transform
    if transform.kind is Estimation.GLS:
        sigma = transform.inverse @ transform.inverse
        return sm.GLS(endog, exog, sigma=sigma).fit()
    if transform.kind is Estimation.WLS:
        return sm.WLS(endog, exog, weights=transform.matrix**2).fit()
    return sm.OLS(endog, exog).fit()


def model_diagnostics(lm: LmRRPP) -> dict[str, Any]:
    """Likelihood, dispersion and goodness-of-fit summaries.

    Returns:
        Dictionary with ``"logL"``, ``"rank"``, ``"ridge"``,
        ``"cov_trace"``, ``"Rsq"`` (share of the intercept-only
        model's residual SS explained, summed over variables) and,
        for univariate responses, a ``"statsmodels"`` sub-dictionary
        with ``logL``, ``Rsq``, ``adj_Rsq``, ``AIC`` and ``BIC``.
    """
    mf = lm.model_fit
    result: dict[str, Any] = log_likelihood(mf)
    result["n_obs"] = lm.n_obs
    result["n_responses"] = lm.n_responses
    result["estimation"] = lm.estimation

    rss = float(np.sum(mf.transformed_residuals**2))
    tss = float(np.sum(lm.null_fit.transformed_residuals**2))
    result["Rsq"] = 1.0 - rss / tss if tss > 0 else np.nan

    if lm.n_responses == 1:
        try:
            sm_res = _statsmodels_fit(lm)
            result["statsmodels"] = {
                "logL": float(sm_res.llf),
                "Rsq": float(sm_res.rsquared),
                "adj_Rsq": float(sm_res.rsquared_adj),
                "AIC": float(sm_res.aic),
                "BIC": float(sm_res.bic),
            }
        except (np.linalg.LinAlgError, ValueError) as exc:
            logger.debug("statsmodels cross-check failed: %s", exc)
            result["statsmodels"] = {
                "logL": np.nan,
                "Rsq": np.nan,
                "adj_Rsq": np.nan,
                "AIC": np.nan,
                "BIC": np.nan,
            }
    return result


def classical_anova(lm: LmRRPP, p_value_threshold: float = 0.05) -> pd.DataFrame:
    """Parametric F tests next to the permutation tests.

    Only defined for univariate responses; use
    :func:`~rrpp.sscp.manova_update` for multivariate ones.

    Returns:
        DataFrame indexed by term with ``Df``, ``F``,
        ``Pr(>F) classical``, ``Pr(>F) permutation``, ``MC SE`` and
        ``diverges`` (the two p-values fall on opposite sides of
        *p_value_threshold*).
    """
    if lm.n_responses != 1:
        raise ValueError("Classical F tests require a univariate response.")
    result = lm.permutations
    terms = list(result.terms)
    df = result.df.astype(float)
    dfe = result.df_residual
    with np.errstate(divide="ignore", invalid="ignore"):
        F = (result.ss / df[:, None]) / (result.rss / dfe)
    F[df == 0] = np.nan
    f_obs = F[:, 0] if terms else np.empty(0)
    classic = np.where(np.isfinite(f_obs), stats.f.sf(f_obs, df, dfe), np.nan)
    perm = permutation_p_values(F) if terms else np.empty(0)
    diverges = [
        bool((c < p_value_threshold) != (e < p_value_threshold))
        if np.isfinite(c) and np.isfinite(e) else False
        for c, e in zip(classic, perm, strict=True)
    ]
    return pd.DataFrame(
        {
            "Df": result.df.astype(int),
            "F": f_obs,
            "Pr(>F) classical": classic,
            "Pr(>F) permutation": perm,
            "MC SE": compute_monte_carlo_se(perm, result.n_permutations),
            "diverges": diverges,
        },
        index=terms,
    )


__all__ = [
    "log_likelihood",
    "covariance_trace",
    "compute_monte_carlo_se",
    "model_diagnostics",
    "classical_anova",
]
