"""Empirical p-values and effect sizes from permutation distributions.

Every distribution handled here has the observed statistic at index 0,
followed by the statistics of the B random permutations.

P-values
--------
The p-value is the proportion of the *whole* distribution (observed
value included) at least as large as the observed value:

    p = #{s_i >= s_0 : i = 0..B} / (B + 1)

Counting the observed value guarantees ``p ∈ (0, 1]`` with a minimum of
``1 / (B + 1)``, which is the Phipson & Smyth (2010) correction
expressed over the full reference set.  Ties count against the observed
value.  The test is one-tailed: large statistics are extreme.

Effect sizes
------------
The effect size is the standardised deviate of the observed value in
its own permutation distribution:

    Z = (s_0 − mean(s)) / sd(s) · √((B) / (B + 1))

with ``sd`` the sample standard deviation (ddof = 1) over all B + 1
values; the scaling factor turns it into the population standard
deviation.  With ``log=True`` the distribution is log-transformed
first (values floored at 1e-32), which makes the right-skewed
distributions of F or SS closer to normal.

References:
    Phipson, B. & Smyth, G. K. (2010). Permutation p-values should
    never be zero. *Statistical Applications in Genetics and Molecular
    Biology*, 9(1), Article 39.

    Collyer, M. L. & Adams, D. C. (2018). RRPP: An R package for
    fitting linear models to high-dimensional data using residual
    randomization. *Methods in Ecology and Evolution*, 9, 1772–1779.
"""

from __future__ import annotations

import numpy as np

_LOG_FLOOR = 1e-32


def permutation_p_value(x: np.ndarray) -> float:
    """One-tailed p-value of ``x[0]`` within ``x`` (inclusive counting).

    Returns NaN when the observed value is NaN.
    """
    x = np.asarray(x, dtype=float).ravel()
    if x.size == 0:
        raise ValueError("Distribution is empty.")
    obs = x[0]
    if np.isnan(obs):
        return float("nan")
    # NaN permutations compare False and never count as extreme.
    return float(np.sum(x >= obs) / x.size)


def permutation_p_values(M: np.ndarray) -> np.ndarray:
    """Row-wise :func:`permutation_p_value` for an ``(m, B + 1)`` matrix."""
    M = np.atleast_2d(np.asarray(M, dtype=float))
    obs = M[:, :1]
    with np.errstate(invalid="ignore"):
        p = np.sum(M >= obs, axis=1) / M.shape[1]
    p[np.isnan(obs[:, 0])] = np.nan
    return p


def effect_size(x: np.ndarray, log: bool = False) -> float:
    """Standardised deviate of ``x[0]`` within ``x``.

    Args:
        x: Distribution with the observed value first.
        log: Log-transform (floored at 1e-32) before standardising.

    Returns:
        The Z score, or NaN when the distribution has no variance or
        contains non-finite values.
    """
    x = np.asarray(x, dtype=float).ravel()
    if log:
        x = np.log(np.maximum(x, _LOG_FLOOR))
    if x.size < 2 or not np.all(np.isfinite(x)):
        return float("nan")
    sd = np.std(x, ddof=1)
    if sd == 0 or not np.isfinite(sd):
        return float("nan")
    n = x.size
    return float((x[0] - x.mean()) / sd * np.sqrt((n - 1) / n))


def effect_sizes(M: np.ndarray, log: bool = False) -> np.ndarray:
    """Row-wise :func:`effect_size` for an ``(m, B + 1)`` matrix."""
    M = np.atleast_2d(np.asarray(M, dtype=float))
    return np.array([effect_size(row, log=log) for row in M])


__all__ = [
    "permutation_p_value",
    "permutation_p_values",
    "effect_size",
    "effect_sizes",
]
