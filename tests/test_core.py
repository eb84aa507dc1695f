"""Tests for the lm_rrpp entry point."""

from __future__ import annotations

import warnings

import numpy as np
import pandas as pd
import pytest

from rrpp import anova, lm_rrpp
from rrpp.design import DesignMatrix
from rrpp.exceptions import DesignError, RankTruncationWarning


def _data(n=24, seed=42):
    rng = np.random.default_rng(seed)
    x = rng.standard_normal(n)
    z = rng.standard_normal(n)
    Y = np.column_stack([x + rng.standard_normal(n), rng.standard_normal(n)])
    return Y, x, z


class TestInputs:
    """Accepted response and design types."""

    def test_mapping_design_matches_design_matrix(self):
        Y, x, z = _data()
        a = lm_rrpp(Y, {"x": x, "z": z}, iterations=19, seed=42)
        b = lm_rrpp(Y, DesignMatrix.from_blocks({"x": x, "z": z}), iterations=19, seed=42)
        np.testing.assert_allclose(a.permutations.ss, b.permutations.ss)
        assert a.terms == ["x", "z"]

    def test_pandas_response_names(self):
        Y, x, _ = _data()
        df = pd.DataFrame(Y, columns=["length", "width"])
        lm = lm_rrpp(df, {"x": x}, iterations=9, seed=42)
        assert lm.response_names == ["length", "width"]
        assert list(lm.coefficients.columns) == ["length", "width"]

    def test_polars_response(self):
        pl = pytest.importorskip("polars")
        Y, x, _ = _data()
        frame = pl.DataFrame({"a": Y[:, 0], "b": Y[:, 1]})
        lm = lm_rrpp(frame, {"x": x}, iterations=9, seed=42)
        expected = lm_rrpp(Y, {"x": x}, iterations=9, seed=42)
        np.testing.assert_allclose(lm.permutations.ss, expected.permutations.ss)

    def test_vector_response(self):
        Y, x, _ = _data()
        lm = lm_rrpp(Y[:, 0], {"x": x}, iterations=9, seed=42)
        assert lm.n_responses == 1

    def test_bad_design_type(self):
        Y, x, _ = _data()
        with pytest.raises(TypeError, match="DesignMatrix or a mapping"):
            lm_rrpp(Y, np.column_stack([np.ones(24), x]), iterations=9)

    def test_row_mismatch(self):
        Y, x, _ = _data()
        with pytest.raises(DesignError, match="rows"):
            lm_rrpp(Y[:20], DesignMatrix.from_blocks({"x": x}), iterations=9)

    def test_non_finite_response(self):
        Y, x, _ = _data()
        Y[3, 1] = np.nan
        with pytest.raises(ValueError, match="non-finite"):
            lm_rrpp(Y, {"x": x}, iterations=9)


class TestContext:
    """Metadata recorded during the analysis."""

    def test_fields(self):
        Y, x, z = _data()
        lm = lm_rrpp(Y, {"x": x, "z": z}, iterations=9, ss_type="II", backend="numpy")
        ctx = lm.context
        assert ctx.n_obs == 24
        assert ctx.n_responses == 2
        assert ctx.term_labels == ["x", "z"]
        assert ctx.ss_type == "II"
        assert ctx.seed == 9
        assert ctx.n_permutations == 10
        assert ctx.estimation == "ols"
        assert ctx.backend == "numpy"
        assert ctx.unique_permutations
        assert not ctx.has_offset

    def test_rank_truncation_is_warned_and_recorded(self):
        Y, x, z = _data()
        block = pd.DataFrame({"z1": z, "z2": 2.0 * x})
        with pytest.warns(RankTruncationWarning, match="rank deficient"):
            lm = lm_rrpp(Y, {"x": x, "z": block}, iterations=9, seed=42)
        assert lm.context.dropped_columns == ["z2"]
        assert lm.context.truncated_terms == ["z"]
        assert any("rank deficient" in m for m in lm.context.warnings_captured)
        assert lm.permutations.df.tolist() == [1, 1]

    def test_schedule_shortfall_warning(self):
        rng = np.random.default_rng(42)
        x = np.array([0.0, 1.0, 2.0, 3.0, 4.0])
        with pytest.warns(UserWarning, match="with replacement"):
            lm = lm_rrpp(rng.standard_normal(5), {"x": x}, iterations=200, seed=42)
        assert not lm.context.unique_permutations
        assert lm.schedule.n_permutations == 201

    def test_no_warning_for_clean_fit(self):
        Y, x, _ = _data()
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            lm = lm_rrpp(Y, {"x": x}, iterations=9, seed=42)
        assert lm.context.warnings_captured == []


class TestOptions:
    """Blocks, offsets and estimation options."""

    def test_blocks_restrict_exchanges(self):
        Y, x, _ = _data()
        blocks = np.repeat(["a", "b", "c"], 8)
        lm = lm_rrpp(Y, {"x": x}, iterations=49, seed=42, blocks=blocks)
        for row in lm.schedule.indices:
            np.testing.assert_array_equal(blocks[row], blocks)

    def test_offset_recorded(self):
        Y, x, _ = _data()
        lm = lm_rrpp(Y, {"x": x}, iterations=9, seed=42, offset=Y)
        assert lm.context.has_offset
        np.testing.assert_allclose(lm.permutations.ss[:, 0], 0.0, atol=1e-20)

    def test_weights_select_wls(self):
        Y, x, _ = _data()
        lm = lm_rrpp(Y, {"x": x}, iterations=9, seed=42, weights=np.full(24, 2.0))
        assert lm.estimation == "wls"
        ols = lm_rrpp(Y, {"x": x}, iterations=9, seed=42)
        # Constant weights scale every SS by the same factor.
        np.testing.assert_allclose(lm.permutations.ss, 2.0 * ols.permutations.ss)

    def test_seed_reproducible(self):
        Y, x, _ = _data()
        a = lm_rrpp(Y, {"x": x}, iterations=19, seed=7)
        b = lm_rrpp(Y, {"x": x}, iterations=19, seed=7)
        np.testing.assert_array_equal(a.schedule.indices, b.schedule.indices)
        c = lm_rrpp(Y, {"x": x}, iterations=19, seed=8)
        assert not np.array_equal(a.schedule.indices, c.schedule.indices)


class TestTwoGroupAnova:
    """Twenty observations in two groups of ten, 999 random permutations."""

    @pytest.fixture()
    def fitted(self):
        rng = np.random.default_rng(42)
        group = np.repeat([0.0, 1.0], 10)
        y = 0.8 * group + rng.standard_normal(20)
        lm = lm_rrpp(y, {"group": pd.DataFrame({"group1": group})}, iterations=999, seed=1)
        return lm, y, group

    def test_distribution_length(self, fitted):
        lm, _, _ = fitted
        assert lm.permutations.ss.shape == (1, 1000)
        assert lm.schedule.n_permutations == 1000

    def test_observed_ss_is_between_group_ss(self, fitted):
        lm, y, group = fitted
        means = np.array([y[group == g].mean() for g in (0.0, 1.0)])
        between = float(np.sum(10 * (means - y.mean()) ** 2))
        assert lm.permutations.ss[0, 0] == pytest.approx(between)

    def test_p_value_counts_statistics_at_least_observed(self, fitted):
        lm, _, _ = fitted
        res = anova(lm)
        F = res.distributions["F"][0]
        expected = np.count_nonzero(F >= F[0]) / 1000
        assert res.table.loc["group", "Pr(>F)"] == pytest.approx(expected)
        assert 1 / 1000 <= res.p_values[0] <= 1
