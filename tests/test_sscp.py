"""Tests for SSCP matrices and multivariate statistics."""

from __future__ import annotations

import warnings

import numpy as np
import pandas as pd
import pytest

from rrpp import lm_rrpp
from rrpp.design import DesignMatrix
from rrpp.exceptions import SingularCovarianceWarning
from rrpp.sscp import FULL_MODEL, manova_update, multivariate_statistics, summary_manova

_ITER = 49


@pytest.fixture()
def rng():
    return np.random.default_rng(42)


@pytest.fixture()
def design(rng):
    n = 24
    group = np.repeat([0.0, 1.0], n // 2)
    return DesignMatrix.from_blocks(
        {"group": pd.DataFrame({"groupB": group}), "x": pd.Series(rng.standard_normal(n), name="x")}
    )


@pytest.fixture()
def multivariate_lm(design, rng):
    group = design.values[:, 1]
    Y = rng.standard_normal((24, 3))
    Y[:, 0] += 2.0 * group
    return lm_rrpp(Y, design, iterations=_ITER)


class TestMultivariateStatistics:
    """Test statistics from eigenvalues."""

    def test_known_values(self):
        stats = multivariate_statistics(np.array([3.0, 1.0]))
        assert stats["Roy"] == pytest.approx(3.0)
        assert stats["Pillai"] == pytest.approx(0.75 + 0.5)
        assert stats["Hotelling-Lawley"] == pytest.approx(4.0)
        assert stats["Wilks"] == pytest.approx(0.25 * 0.5)

    def test_non_positive_eigenvalues_ignored(self):
        stats = multivariate_statistics(np.array([2.0, 1e-20, -0.5]))
        assert stats["Hotelling-Lawley"] == pytest.approx(2.0)
        assert stats["Wilks"] == pytest.approx(1 / 3)

    def test_batched_shape(self):
        eigs = np.ones((3, 10, 2))
        assert multivariate_statistics(eigs)["Pillai"].shape == (3, 10)


class TestManovaUpdate:
    """Per-permutation SSCP evaluation."""

    def test_shapes(self, multivariate_lm):
        res = manova_update(multivariate_lm)
        assert res.terms == ["group", "x", FULL_MODEL]
        assert res.eigenvalues.shape == (3, _ITER + 1, 3)
        assert res.H.shape == (3, _ITER + 1, 3, 3)
        assert not res.pca_truncated
        assert res.n_fallbacks == 0
        np.testing.assert_array_equal(res.df, [1, 1, 2])

    def test_observed_sscp_traces_match_ss(self, multivariate_lm):
        res = manova_update(multivariate_lm)
        perm = multivariate_lm.permutations
        traces = np.trace(res.H[:2, 0], axis1=1, axis2=2)
        np.testing.assert_allclose(traces, perm.ss[:, 0], rtol=1e-8)
        np.testing.assert_allclose(np.trace(res.R[0, 0]), perm.rss[0, 0], rtol=1e-8)

    def test_observed_pillai_matches_classical(self, multivariate_lm, design):
        res = manova_update(multivariate_lm)
        Y = multivariate_lm.response
        X_full = design.values
        X_red = design.values[:, [0, 1]]
        E = Y - X_full @ np.linalg.lstsq(X_full, Y, rcond=None)[0]
        Er = Y - X_red @ np.linalg.lstsq(X_red, Y, rcond=None)[0]
        R = E.T @ E
        H = Er.T @ Er - R
        eig = np.real(np.linalg.eigvals(np.linalg.solve(R, H)))
        expected = np.sum(eig / (1 + eig))
        observed = multivariate_statistics(res.eigenvalues)["Pillai"][1, 0]
        assert observed == pytest.approx(expected, rel=1e-6)

    def test_keep_sscp_false(self, multivariate_lm):
        res = manova_update(multivariate_lm, keep_sscp=False)
        assert res.H is None
        assert res.R is None

    def test_pca_truncation(self, design, rng):
        Y = rng.standard_normal((24, 30))
        lm = lm_rrpp(Y, design, iterations=9)
        with pytest.warns(SingularCovarianceWarning):
            res = manova_update(lm)
        assert res.pca_truncated
        assert res.n_components == 23
        res_pc = manova_update(lm, pc_no=4)
        assert res_pc.n_components == 4
        assert res_pc.eigenvalues.shape == (3, 10, 4)

    def test_univariate_rejected(self, design, rng):
        lm = lm_rrpp(rng.standard_normal(24), design, iterations=9)
        with pytest.raises(ValueError, match="at least 2 response variables"):
            manova_update(lm)

    def test_singular_residual_sscp_warns_once(self, rng):
        n = 8
        group = np.repeat([0.0, 1.0], n // 2)
        d = DesignMatrix.from_blocks({"group": pd.DataFrame({"groupB": group})})
        lm = lm_rrpp(rng.standard_normal((n, 20)), d, iterations=9)
        with pytest.warns(SingularCovarianceWarning, match="fallback") as record:
            res = manova_update(lm)
        assert res.n_components == n - 1
        assert res.n_fallbacks > 0
        assert sum(issubclass(w.category, SingularCovarianceWarning) for w in record) == 1

    def test_well_conditioned_does_not_warn(self, multivariate_lm):
        with warnings.catch_warnings():
            warnings.simplefilter("error", SingularCovarianceWarning)
            res = manova_update(multivariate_lm)
        assert res.n_fallbacks == 0


class TestSummaryManova:
    """Permutation MANOVA tables."""

    def test_table(self, multivariate_lm):
        table = summary_manova(manova_update(multivariate_lm), test="Pillai")
        assert list(table.index) == ["group", "x", FULL_MODEL]
        assert list(table.columns) == ["Df", "Residual Df", "Pillai", "Z", "Pr(>Pillai)"]
        assert table.loc["group", "Pr(>Pillai)"] <= 0.05

    def test_wilks_lower_tail(self, multivariate_lm):
        res = manova_update(multivariate_lm)
        table = summary_manova(res, test="Wilks")
        wilks = multivariate_statistics(res.eigenvalues)["Wilks"]
        expected = np.mean(wilks <= wilks[:, :1], axis=1)
        np.testing.assert_allclose(table["Pr(>Wilks)"].to_numpy(), expected)

    def test_unknown_test(self, multivariate_lm):
        with pytest.raises(ValueError, match="Unknown test"):
            summary_manova(manova_update(multivariate_lm), test="Lawley")
