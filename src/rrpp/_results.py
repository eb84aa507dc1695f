"""Typed result objects.

Frozen dataclasses that provide:

* **Attribute access** — ``result.terms``, ``result.ss``, etc.
* **Dict-like access** — ``result["terms"]``, ``result.get("key")``,
  ``"key" in result`` for consumers that prefer bracket syntax.
* **Serialisation** — ``.to_dict()`` returns a plain ``dict[str, Any]``
  with NumPy types and pandas tables converted to native Python.

Every permutation distribution is stored with the observed value at
index 0 along its last axis.

* :class:`PermutationResult` — raw per-term SS (and coefficient)
  distributions from :class:`~rrpp.engine.RRPPEngine`.
* :class:`LmRRPP` — a complete analysis: fits, schedule, and the
  permutation result.
* :class:`AnovaResult`, :class:`ModelComparisonResult`,
  :class:`ManovaResult`, :class:`CoefficientTestResult`,
  :class:`BetaTestResult` — assembled statistics.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import TYPE_CHECKING, Any, ClassVar

import numpy as np
import pandas as pd

if TYPE_CHECKING:
    from ._context import FitContext
    from .design import DesignDecomposition, SSType
    from .fitting import CovarianceTransform, Fit
    from .permutations import PermutationSchedule

# ------------------------------------------------------------------ #
# Serialisation helper
# ------------------------------------------------------------------ #


def _numpy_to_python(obj: Any) -> Any:
    """Recursively convert NumPy and pandas objects to Python-native types.

    Handles nested dicts, lists, ``np.ndarray``, NumPy scalars and
    ``pd.DataFrame`` (converted row-wise) so that :meth:`to_dict`
    returns a JSON-serialisable structure.
    """
    if isinstance(obj, pd.DataFrame):
        return {str(k): _numpy_to_python(v) for k, v in obj.to_dict(orient="index").items()}
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, (np.integer, np.bool_)):
        return int(obj)
    if isinstance(obj, np.floating):
        return float(obj)
    if isinstance(obj, dict):
        return {k: _numpy_to_python(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        converted = [_numpy_to_python(item) for item in obj]
        return type(obj)(converted)
    return obj


# ------------------------------------------------------------------ #
# Dict-compatibility mixin
# ------------------------------------------------------------------ #


class _DictAccessMixin:
    """Dict-like access convenience for result dataclasses.

    1. ``result["key"]``      — raises ``KeyError`` on miss
    2. ``result.get(key, d)`` — returns *d* on miss (default ``None``)
    3. ``"key" in result``    — membership test

    Subclasses may override ``_SERIALIZERS`` to register conversion
    functions for non-primitive fields, and ``_EXCLUDE_FROM_DICT`` to
    drop heavy or opaque fields from :meth:`to_dict`.
    """

    _SERIALIZERS: ClassVar[dict[str, Any]] = {
        "ss_type": lambda s: s.value,
    }

    _EXCLUDE_FROM_DICT: ClassVar[frozenset[str]] = frozenset({"context"})

    def __getitem__(self, key: str) -> Any:
        try:
            return getattr(self, key)
        except AttributeError:
            raise KeyError(key) from None

    def get(self, key: str, default: Any = None) -> Any:
        return getattr(self, key, default)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, str):
            return False
        return hasattr(self, key)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain, JSON-serialisable dictionary."""
        result: dict[str, Any] = {}
        for f in fields(self):  # type: ignore[arg-type]
            if f.name in self._EXCLUDE_FROM_DICT:
                continue
            val = getattr(self, f.name)
            if f.name in self._SERIALIZERS and val is not None:
                val = self._SERIALIZERS[f.name](val)
            result[f.name] = _numpy_to_python(val)
        return result


# ------------------------------------------------------------------ #
# PermutationResult
# ------------------------------------------------------------------ #


@dataclass(frozen=True, eq=False)
class PermutationResult(_DictAccessMixin):
    """Raw permutation distributions for every term.

    Arrays indexed ``[term, permutation]`` have shape ``(k, B + 1)``.
    """

    terms: list[str]

    ss: np.ndarray
    """Term SS, ``ss_full − ss_reduced``; exactly 0 for degenerate terms."""

    ss_reduced: np.ndarray
    """``‖U_reduced' y*‖²`` per term and permutation."""

    ss_full: np.ndarray
    """``‖U_full' y*‖²`` per term and permutation."""

    rss: np.ndarray
    """Complete-model RSS of each term's pseudo-response."""

    rss_model: np.ndarray
    """Complete-model RSS of the intercept-only pseudo-response, ``(B + 1,)``."""

    tss: np.ndarray
    """Total SS of the intercept-only pseudo-response, ``(B + 1,)``."""

    df: np.ndarray
    """Term degrees of freedom (rank difference), ``(k,)``."""

    df_residual: int
    df_total: int
    n_obs: int
    n_responses: int

    ss_type: SSType
    randomization: str
    estimation: str
    degenerate_terms: list[str] = field(default_factory=list)

    coefficients: dict[str, np.ndarray] | None = None
    """Per term, full-model coefficients ``(B + 1, rank_full, p)``."""

    coefficient_names: dict[str, list[str]] | None = None
    """Per term, row labels of :attr:`coefficients`."""

    coefficient_distances: np.ndarray | None = None
    """``(m, B + 1)`` lengths of each coefficient unique to a full model."""

    distance_labels: list[tuple[str, str]] = field(default_factory=list)
    """``(term, column)`` for each row of :attr:`coefficient_distances`."""

    _EXCLUDE_FROM_DICT: ClassVar[frozenset[str]] = frozenset({"coefficients"})

    @property
    def n_permutations(self) -> int:
        return self.tss.shape[0]

    def term_index(self, term: str) -> int:
        try:
            return self.terms.index(term)
        except ValueError:
            raise KeyError(f"Unknown term {term!r}.") from None


# ------------------------------------------------------------------ #
# LmRRPP
# ------------------------------------------------------------------ #


@dataclass(frozen=True, eq=False)
class LmRRPP(_DictAccessMixin):
    """A complete RRPP linear-model analysis.

    Holds the observed fits for every nested model, the permutation
    schedule, and the raw permutation distributions.  Statistic
    assembly (:func:`~rrpp.anova.anova`, :func:`~rrpp.sscp.manova_update`,
    :func:`~rrpp.coefficients.coef_test`) reads from this object
    without re-fitting.
    """

    response: np.ndarray
    """Original-scale response ``(n, p)``."""

    response_names: list[str]
    decomposition: DesignDecomposition
    transform: CovarianceTransform
    schedule: PermutationSchedule
    model_fit: Fit
    null_fit: Fit
    reduced_fits: dict[str, Fit]
    full_fits: dict[str, Fit]
    permutations: PermutationResult
    randomization: str
    offset: np.ndarray | None = None
    context: FitContext | None = None

    _EXCLUDE_FROM_DICT: ClassVar[frozenset[str]] = frozenset(
        {
            "context",
            "response",
            "decomposition",
            "transform",
            "schedule",
            "model_fit",
            "null_fit",
            "reduced_fits",
            "full_fits",
            "offset",
        }
    )

    _SERIALIZERS: ClassVar[dict[str, Any]] = {
        "permutations": lambda r: r.to_dict(),
    }

    @property
    def terms(self) -> list[str]:
        return list(self.permutations.terms)

    @property
    def ss_type(self) -> SSType:
        return self.decomposition.ss_type

    @property
    def n_obs(self) -> int:
        return self.response.shape[0]

    @property
    def n_responses(self) -> int:
        return self.response.shape[1]

    @property
    def estimation(self) -> str:
        return self.transform.kind.value

    @property
    def coefficients(self) -> pd.DataFrame:
        """Complete-model coefficients (rows: design columns)."""
        return pd.DataFrame(
            self.model_fit.coefficients,
            index=list(self.model_fit.design.column_names),
            columns=self.response_names,
        )

    @property
    def fitted(self) -> np.ndarray:
        return self.model_fit.fitted

    @property
    def residuals(self) -> np.ndarray:
        return self.model_fit.residuals


# ------------------------------------------------------------------ #
# Assembled statistics
# ------------------------------------------------------------------ #


@dataclass(frozen=True, eq=False)
class AnovaResult(_DictAccessMixin):
    """ANOVA table plus the per-term statistic distributions."""

    table: pd.DataFrame
    effect_type: str
    terms: list[str]
    distributions: dict[str, np.ndarray]
    """Statistic name → ``(k, B + 1)``; keys ``SS``, ``MS``, ``Rsq``, ``F``, ``cohenf``."""

    p_values: np.ndarray
    z_scores: np.ndarray
    error_terms: list[str] | None = None
    n_permutations: int = 0
    estimation: str = "ols"

    _EXCLUDE_FROM_DICT: ClassVar[frozenset[str]] = frozenset({"distributions"})


@dataclass(frozen=True, eq=False)
class ModelComparisonResult(_DictAccessMixin):
    """Multi-model comparison against a reference (null) model."""

    table: pd.DataFrame
    effect_type: str
    models: list[str]
    distributions: dict[str, np.ndarray]
    """Statistic name → ``(m, B + 1)``; keys ``RSS``, ``SS``, ``Rsq``, ``F``."""

    p_values: np.ndarray
    z_scores: np.ndarray

    _EXCLUDE_FROM_DICT: ClassVar[frozenset[str]] = frozenset({"distributions"})


@dataclass(frozen=True, eq=False)
class ManovaResult(_DictAccessMixin):
    """Per-permutation SSCP matrices and eigenvalues for every term.

    Entry ``terms[-1]`` is ``"Full.Model"`` (complete model vs. the
    intercept-only model).
    """

    terms: list[str]
    eigenvalues: np.ndarray
    """``(k + 1, B + 1, p')`` real parts of eig(R⁻¹H), sorted descending."""

    df: np.ndarray
    df_residual: int
    n_components: int
    pca_truncated: bool
    inversion_methods: np.ndarray
    """``(k + 1, B + 1)`` object array: ``"inverse"``, ``"pinv"`` or ``"shrinkage"``."""

    H: np.ndarray | None = None
    """``(k + 1, B + 1, p', p')`` hypothesis SSCP matrices when kept."""

    R: np.ndarray | None = None
    """``(k + 1, B + 1, p', p')`` residual SSCP matrices when kept."""

    _EXCLUDE_FROM_DICT: ClassVar[frozenset[str]] = frozenset({"H", "R"})

    @property
    def n_fallbacks(self) -> int:
        """Number of (term, permutation) inversions that needed a fallback."""
        return int(np.sum(self.inversion_methods != "inverse"))


@dataclass(frozen=True, eq=False)
class CoefficientTestResult(_DictAccessMixin):
    """Permutation test of coefficient vector lengths."""

    table: pd.DataFrame
    distances: np.ndarray
    labels: list[tuple[str, str]]
    confidence: float

    _EXCLUDE_FROM_DICT: ClassVar[frozenset[str]] = frozenset({"distances"})


@dataclass(frozen=True, eq=False)
class BetaTestResult(_DictAccessMixin):
    """Test of coefficient rows against a hypothesised Beta."""

    table: pd.DataFrame
    coefficients: list[str]
    beta: np.ndarray
    d: np.ndarray
    """``(m, B + 1)`` distributions of ``‖b − β‖`` (β subtracted at index 0 only)."""

    md: np.ndarray | None = None
    """``(m, B + 1)`` Mahalanobis distances, when requested."""


__all__ = [
    "PermutationResult",
    "LmRRPP",
    "AnovaResult",
    "ModelComparisonResult",
    "ManovaResult",
    "CoefficientTestResult",
    "BetaTestResult",
]
