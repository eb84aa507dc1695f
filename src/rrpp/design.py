"""Design matrices and their decomposition into nested model pairs.

Each term in a linear model is tested by comparing a *reduced* model
(the null) with a *full* model (the alternative).  Three conventions
decide which terms the reduced model holds:

* **Type I (sequential)** — terms enter in order.  The reduced model for
  term *i* is the intercept plus terms ``1..i-1``; the full model adds
  term *i*.  Term order matters.
* **Type II (hierarchical)** — the reduced model for term *i* holds
  every other term whose factor set does not contain term *i*'s factor
  set (lower-order and unrelated terms), so that main effects are
  adjusted for each other but not for their own interactions.
* **Type III (marginal)** — the reduced model is the complete model
  minus term *i*; the full model is always the complete model.

Rank handling
~~~~~~~~~~~~~
Rank-deficient columns are detected once on the complete design, in
column order, and the same kept set is reused for every nested model.
This keeps every reduced column space a subset of its full column
space.  Degrees of freedom downstream use the realised rank, never the
nominal column count.

References:
    Collyer, M. L., Sekora, D. J. & Adams, D. C. (2015). A method for
    analysis of phenotypic change for phenotypes described by
    high-dimensional data. *Heredity*, 115, 357–365.

    Fox, J. (2016). *Applied Regression Analysis and Generalized
    Linear Models* (3rd ed.), ch. 8.
"""

from __future__ import annotations

import logging
import warnings
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import numpy as np

from ._compat import _as_matrix
from ._linalg import independent_columns
from .exceptions import DesignError, RankTruncationWarning

logger = logging.getLogger(__name__)

INTERCEPT = "(Intercept)"


class SSType(str, Enum):
    """Sums-of-squares convention used to build nested model pairs."""

    SEQUENTIAL = "I"
    HIERARCHICAL = "II"
    MARGINAL = "III"

    @classmethod
    def coerce(cls, value: str | SSType) -> SSType:
        """Accept ``"I"``/``"II"``/``"III"``, a lowercase member name, or a member."""
        if isinstance(value, cls):
            return value
        text = str(value).strip()
        for member in cls:
            if text.upper() == member.value or text.lower() == member.name.lower():
                return member
        valid = ", ".join(f"'{m.value}'" for m in cls)
        raise ValueError(f"Invalid ss_type '{value}'. Choose from: {valid}.")


# ------------------------------------------------------------------ #
# DesignMatrix
# ------------------------------------------------------------------ #


@dataclass(frozen=True, eq=False)
class DesignMatrix:
    """A numeric design matrix with a column → term mapping.

    ``assign[c]`` is ``0`` for the intercept column and ``j`` (1-based)
    for a column that belongs to ``term_labels[j - 1]``.  The matrix
    always carries the full term list of the model it was derived
    from, so sub-designs can report which terms they omit.
    """

    values: np.ndarray
    assign: np.ndarray
    term_labels: tuple[str, ...]
    column_names: tuple[str, ...]
    term_factors: tuple[frozenset[str], ...] = ()

    def __post_init__(self) -> None:
        values = np.array(self.values, dtype=float)
        if values.ndim != 2:
            msg = f"Design values must be 2-D, got {values.ndim} dimensions."
            raise DesignError(msg)
        assign = np.array(self.assign, dtype=np.intp).ravel()
        if assign.shape[0] != values.shape[1]:
            msg = (
                f"assign has {assign.shape[0]} entries but the design has "
                f"{values.shape[1]} columns."
            )
            raise DesignError(msg)
        if assign.size and (assign.min() < 0 or assign.max() > len(self.term_labels)):
            msg = "assign refers to a term index outside term_labels."
            raise DesignError(msg)
        if len(self.column_names) != values.shape[1]:
            msg = "column_names must have one entry per design column."
            raise DesignError(msg)
        if len(set(self.column_names)) != len(self.column_names):
            msg = "column_names must be unique across terms."
            raise DesignError(msg)
        factors = self.term_factors or tuple(
            frozenset(label.split(":")) for label in self.term_labels
        )
        if len(factors) != len(self.term_labels):
            msg = "term_factors must have one entry per term."
            raise DesignError(msg)
        values.setflags(write=False)
        assign.setflags(write=False)
        object.__setattr__(self, "values", values)
        object.__setattr__(self, "assign", assign)
        object.__setattr__(self, "term_labels", tuple(self.term_labels))
        object.__setattr__(self, "column_names", tuple(self.column_names))
        object.__setattr__(self, "term_factors", tuple(frozenset(f) for f in factors))

    # ---- Construction ---------------------------------------------

    @classmethod
    def from_blocks(
        cls,
        blocks: Mapping[str, Any],
        *,
        intercept: bool = True,
        n_obs: int | None = None,
        factors: Mapping[str, Sequence[str]] | None = None,
    ) -> DesignMatrix:
        """Assemble a design from per-term column blocks.

        Args:
            blocks: Ordered mapping of term label → columns (array,
                Series, or DataFrame).  Column names are taken from
                DataFrames, otherwise derived from the term label.
            intercept: Prepend a column of ones.
            n_obs: Row count; required only when *blocks* is empty.
            factors: Optional factor sets per term (for Type II).
                Defaults to the label split on ``":"``.

        Returns:
            A new :class:`DesignMatrix`.
        """
        columns: list[np.ndarray] = []
        names: list[str] = []
        assign: list[int] = []
        labels = list(blocks)

        for j, label in enumerate(labels, start=1):
            values, cols = _as_matrix(blocks[label], name=label)
            if values.shape[1] == 0:
                msg = f"Term '{label}' has no columns."
                raise DesignError(msg)
            columns.append(values)
            names.extend(cols)
            assign.extend([j] * values.shape[1])

        if columns:
            n_rows = {c.shape[0] for c in columns}
            if len(n_rows) != 1:
                msg = f"Term blocks have differing row counts: {sorted(n_rows)}."
                raise DesignError(msg)
            n = n_rows.pop()
        elif n_obs is not None:
            n = int(n_obs)
        else:
            msg = "n_obs is required when no term blocks are given."
            raise DesignError(msg)

        if intercept:
            columns.insert(0, np.ones((n, 1)))
            names.insert(0, INTERCEPT)
            assign.insert(0, 0)

        values = np.hstack(columns) if columns else np.empty((n, 0))
        term_factors = tuple(
            frozenset(factors[label]) if factors and label in factors
            else frozenset(label.split(":"))
            for label in labels
        )
        return cls(values, np.asarray(assign), tuple(labels), tuple(names), term_factors)

    # ---- Properties ------------------------------------------------

    @property
    def n_obs(self) -> int:
        return self.values.shape[0]

    @property
    def n_columns(self) -> int:
        return self.values.shape[1]

    @property
    def n_terms(self) -> int:
        return len(self.term_labels)

    @property
    def has_intercept(self) -> bool:
        return bool(np.any(self.assign == 0))

    @property
    def present_terms(self) -> tuple[int, ...]:
        """1-based indices of the terms that own at least one column."""
        return tuple(int(j) for j in np.unique(self.assign) if j > 0)

    # ---- Sub-designs -----------------------------------------------

    def select_terms(
        self, term_indices: Sequence[int], *, keep_intercept: bool = True
    ) -> DesignMatrix:
        """Return the sub-design made of the given 1-based term indices."""
        wanted = set(int(j) for j in term_indices)
        if keep_intercept:
            wanted.add(0)
        mask = np.isin(self.assign, sorted(wanted))
        return self._subset(mask)

    def drop_columns(self, drop: np.ndarray) -> DesignMatrix:
        """Return a copy without the columns flagged in boolean *drop*."""
        return self._subset(~np.asarray(drop, dtype=bool))

    def _subset(self, mask: np.ndarray) -> DesignMatrix:
        return DesignMatrix(
            self.values[:, mask],
            self.assign[mask],
            self.term_labels,
            tuple(np.asarray(self.column_names, dtype=object)[mask]),
            self.term_factors,
        )

    def columns_of(self, term: int) -> tuple[str, ...]:
        """Column names owned by 1-based term index *term* (0 = intercept)."""
        return tuple(
            name for name, a in zip(self.column_names, self.assign, strict=True)
            if a == term
        )

    def same_columns(self, other: DesignMatrix) -> bool:
        """Whether *other* spans exactly the same named columns."""
        return self.column_names == other.column_names


# ------------------------------------------------------------------ #
# Nested pairs
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class NestedModelPair:
    """Reduced (null) and full (alternative) designs for one term."""

    term: str
    reduced: DesignMatrix
    full: DesignMatrix

    @property
    def added_columns(self) -> tuple[str, ...]:
        """Full-model columns absent from the reduced model."""
        reduced = set(self.reduced.column_names)
        return tuple(c for c in self.full.column_names if c not in reduced)

    @property
    def is_degenerate(self) -> bool:
        return len(self.added_columns) == 0


@dataclass(frozen=True)
class DesignDecomposition:
    """Every term's nested pair, derived from one rank-reduced design."""

    ss_type: SSType
    design: DesignMatrix
    """The complete model after rank reduction."""

    pairs: dict[str, NestedModelPair] = field(default_factory=dict)
    nominal_columns: int = 0
    dropped_columns: tuple[str, ...] = ()
    truncated_terms: tuple[str, ...] = ()

    @property
    def terms(self) -> tuple[str, ...]:
        return tuple(self.pairs)

    @property
    def n_obs(self) -> int:
        return self.design.n_obs

    @property
    def rank(self) -> int:
        return self.design.n_columns

    @property
    def intercept_design(self) -> DesignMatrix:
        """Intercept-only model (zero columns when the model has none)."""
        return self.design.select_terms([], keep_intercept=True)


# ------------------------------------------------------------------ #
# Term containment
# ------------------------------------------------------------------ #


def term_containment(term_factors: Sequence[frozenset[str]]) -> np.ndarray:
    """Boolean matrix ``C[j, m]``: factors of term *j* ⊆ factors of term *m*.

    The diagonal is always ``True``.  For Type II, term *m* is excluded
    from term *j*'s reduced model exactly when ``C[j, m]`` holds.
    """
    k = len(term_factors)
    out = np.zeros((k, k), dtype=bool)
    for j, fj in enumerate(term_factors):
        for m, fm in enumerate(term_factors):
            out[j, m] = fj <= fm
    return out


# ------------------------------------------------------------------ #
# Rank reduction
# ------------------------------------------------------------------ #


def reduce_rank(
    design: DesignMatrix, tol: float = 1e-7
) -> tuple[DesignMatrix, tuple[str, ...], tuple[str, ...]]:
    """Drop linearly dependent columns, keeping column order.

    Returns:
        ``(reduced_design, dropped_columns, truncated_terms)``.

    Warns:
        RankTruncationWarning: When any column is dropped.

    Raises:
        DesignError: If a term loses all of its columns.
    """
    kept = independent_columns(design.values, tol=tol)
    drop = np.ones(design.n_columns, dtype=bool)
    drop[kept] = False
    if not drop.any():
        return design, (), ()

    dropped = tuple(np.asarray(design.column_names, dtype=object)[drop])
    touched = sorted({int(a) for a in design.assign[drop]})
    truncated = tuple(
        INTERCEPT if a == 0 else design.term_labels[a - 1] for a in touched
    )
    reduced = design.drop_columns(drop)

    emptied = [
        design.term_labels[j - 1]
        for j in design.present_terms
        if j not in reduced.present_terms
    ]
    if emptied:
        msg = (
            f"Term(s) {emptied} have no linearly independent columns after "
            f"rank reduction; remove them from the model."
        )
        raise DesignError(msg)

    warnings.warn(
        f"Design is rank deficient: {design.n_columns} columns reduced to "
        f"{reduced.n_columns}.  Dropped {list(dropped)} from term(s) "
        f"{list(truncated)}.  Degrees of freedom use the realised rank.",
        RankTruncationWarning,
        stacklevel=3,
    )
    return reduced, dropped, truncated


# ------------------------------------------------------------------ #
# Decomposition
# ------------------------------------------------------------------ #


def _reduced_terms(ss_type: SSType, j: int, k: int, containment: np.ndarray) -> list[int]:
    """1-based terms in the reduced model for 1-based term *j*."""
    if ss_type is SSType.SEQUENTIAL:
        return list(range(1, j))
    if ss_type is SSType.MARGINAL:
        return [m for m in range(1, k + 1) if m != j]
    return [m for m in range(1, k + 1) if not containment[j - 1, m - 1]]


def decompose(
    design: DesignMatrix,
    ss_type: str | SSType = SSType.SEQUENTIAL,
    tol: float = 1e-7,
) -> DesignDecomposition:
    """Build one :class:`NestedModelPair` per term.

    Args:
        design: Complete model design.
        ss_type: ``"I"`` (sequential), ``"II"`` (hierarchical) or
            ``"III"`` (marginal).
        tol: Relative tolerance for rank detection.

    Returns:
        A :class:`DesignDecomposition` whose ``pairs`` preserve the
        model's term order.

    Raises:
        DesignError: If the design is empty, a term has no realisable
            columns, or the complete model leaves no residual degrees
            of freedom.
    """
    ss_type = SSType.coerce(ss_type)
    if design.n_obs == 0:
        raise DesignError("Design has no rows.")

    present = set(design.present_terms)
    missing = [
        label for j, label in enumerate(design.term_labels, start=1) if j not in present
    ]
    if missing:
        msg = f"Term(s) {missing} have no columns in the design."
        raise DesignError(msg)

    reduced_design, dropped, truncated = reduce_rank(design, tol=tol)

    if design.n_obs <= reduced_design.n_columns:
        msg = (
            f"The model has rank {reduced_design.n_columns} with "
            f"{design.n_obs} observations, leaving no residual degrees of "
            f"freedom."
        )
        raise DesignError(msg)

    k = design.n_terms
    containment = term_containment(design.term_factors)
    pairs: dict[str, NestedModelPair] = {}
    for j, label in enumerate(design.term_labels, start=1):
        red_terms = _reduced_terms(ss_type, j, k, containment)
        if ss_type is SSType.MARGINAL:
            full = reduced_design
        else:
            full = reduced_design.select_terms(sorted(red_terms + [j]))
        reduced = reduced_design.select_terms(red_terms)
        pairs[label] = NestedModelPair(label, reduced, full)

    logger.debug(
        "Decomposed %d term(s) under SS type %s (rank %d of %d columns).",
        k, ss_type.value, reduced_design.n_columns, design.n_columns,
    )
    return DesignDecomposition(
        ss_type=ss_type,
        design=reduced_design,
        pairs=pairs,
        nominal_columns=design.n_columns,
        dropped_columns=dropped,
        truncated_terms=truncated,
    )


__all__ = [
    "INTERCEPT",
    "SSType",
    "DesignMatrix",
    "NestedModelPair",
    "DesignDecomposition",
    "term_containment",
    "reduce_rank",
    "decompose",
]
