"""Input compatibility layer for response and design inputs.

The public API works on NumPy arrays internally.  This module converts
pandas objects and, when installed, Polars objects at the boundary so
that every downstream component sees a float ``ndarray`` plus the
column labels it came with.

Polars is **not** a required dependency.  If it is not installed the
converter simply handles NumPy and pandas inputs.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, TypeAlias

import numpy as np
import pandas as pd

if TYPE_CHECKING:
    import polars as pl

    DataFrameLike: TypeAlias = pd.DataFrame | pl.DataFrame | pl.LazyFrame
else:
    DataFrameLike: TypeAlias = pd.DataFrame

try:
    import polars as pl

    _HAS_POLARS = True
except ImportError:
    _HAS_POLARS = False


def _ensure_pandas(obj: Any) -> pd.DataFrame | np.ndarray:
    """Convert Polars frames/series to pandas; pass everything else through."""
    if _HAS_POLARS:
        if isinstance(obj, pl.LazyFrame):
            return obj.collect().to_pandas()
        if isinstance(obj, pl.DataFrame):
            return obj.to_pandas()
        if isinstance(obj, pl.Series):
            return obj.to_frame().to_pandas()
    return obj


def _as_matrix(obj: Any, *, name: str = "input") -> tuple[np.ndarray, list[str]]:
    """Return *obj* as a 2-D float array together with column labels.

    Accepted types:
        * ``numpy.ndarray`` (1-D arrays become a single column).
        * ``pandas.DataFrame`` / ``pandas.Series``.
        * ``polars.DataFrame`` / ``polars.Series`` / ``polars.LazyFrame``.
        * Lists of numbers (converted with ``np.asarray``).

    Args:
        obj: Input data.
        name: Label used in error messages and default column names.

    Returns:
        ``(values, column_names)`` where *values* has shape ``(n, p)``.

    Raises:
        TypeError: If *obj* cannot be interpreted as numeric data.
        ValueError: If *obj* has more than two dimensions.
    """
    obj = _ensure_pandas(obj)

    if isinstance(obj, pd.Series):
        label = str(obj.name) if obj.name is not None else name
        return obj.to_numpy(dtype=float).reshape(-1, 1), [label]

    if isinstance(obj, pd.DataFrame):
        return obj.to_numpy(dtype=float), [str(c) for c in obj.columns]

    if isinstance(obj, (np.ndarray, list, tuple)):
        try:
            values = np.asarray(obj, dtype=float)
        except (TypeError, ValueError) as exc:
            msg = f"'{name}' must contain numeric values."
            raise TypeError(msg) from exc
        if values.ndim == 1:
            values = values.reshape(-1, 1)
        if values.ndim != 2:
            msg = f"'{name}' must be 1-D or 2-D, got {values.ndim} dimensions."
            raise ValueError(msg)
        if values.shape[1] == 1:
            labels = [name]
        else:
            labels = [f"{name}{i + 1}" for i in range(values.shape[1])]
        return values, labels

    raise TypeError(
        f"'{name}' must be a NumPy array or pandas DataFrame/Series"
        + (" or Polars DataFrame/Series/LazyFrame" if _HAS_POLARS else "")
        + f", got {type(obj).__name__}."
    )
