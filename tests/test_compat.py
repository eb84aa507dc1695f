"""Tests for response and design input conversion."""

import numpy as np
import pandas as pd
import pytest

from rrpp._compat import _as_matrix, _ensure_pandas


class TestAsMatrix:
    """Conversion of NumPy and pandas inputs."""

    def test_vector_becomes_column(self):
        values, names = _as_matrix(np.arange(4.0), name="y")
        assert values.shape == (4, 1)
        assert names == ["y"]

    def test_matrix_default_names(self):
        values, names = _as_matrix(np.ones((3, 2)), name="y")
        assert values.shape == (3, 2)
        assert names == ["y1", "y2"]

    def test_dataframe_keeps_labels(self):
        df = pd.DataFrame({"a": [1, 2], "b": [3, 4]})
        values, names = _as_matrix(df)
        np.testing.assert_array_equal(values, [[1.0, 3.0], [2.0, 4.0]])
        assert names == ["a", "b"]

    def test_series_name(self):
        _, names = _as_matrix(pd.Series([1.0, 2.0], name="mass"), name="y")
        assert names == ["mass"]
        _, names = _as_matrix(pd.Series([1.0, 2.0]), name="y")
        assert names == ["y"]

    def test_list_input(self):
        values, _ = _as_matrix([[1, 2], [3, 4]])
        assert values.dtype == float

    def test_rejects_non_numeric(self):
        with pytest.raises(TypeError, match="numeric"):
            _as_matrix(np.array(["a", "b"]), name="y")

    def test_rejects_three_dimensions(self):
        with pytest.raises(ValueError, match="1-D or 2-D"):
            _as_matrix(np.zeros((2, 2, 2)))

    def test_rejects_invalid_type(self):
        with pytest.raises(TypeError, match="'X'"):
            _as_matrix({"a": 1}, name="X")


class TestPolars:
    """Polars frames are converted at the boundary."""

    def test_pandas_passthrough(self):
        df = pd.DataFrame({"a": [1, 2, 3]})
        assert _ensure_pandas(df) is df

    def test_polars_converted(self):
        pl = pytest.importorskip("polars")
        result = _ensure_pandas(pl.DataFrame({"a": [1, 2, 3]}))
        assert isinstance(result, pd.DataFrame)
        assert result["a"].tolist() == [1, 2, 3]

    def test_polars_lazyframe_collected(self):
        pl = pytest.importorskip("polars")
        result = _ensure_pandas(pl.DataFrame({"a": [1, 2, 3]}).lazy())
        assert isinstance(result, pd.DataFrame)

    def test_polars_series(self):
        pl = pytest.importorskip("polars")
        values, names = _as_matrix(pl.Series("mass", [1.0, 2.0, 3.0]))
        assert values.shape == (3, 1)
        assert names == ["mass"]
