"""Tests for ANOVA assembly and multi-model comparison."""

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from rrpp import lm_rrpp
from rrpp.anova import anova, anova_parts, compare_effect_sizes, compare_models
from rrpp.design import DesignMatrix

_ITER = 99


@pytest.fixture()
def data():
    rng = np.random.default_rng(42)
    n = 30
    group = np.repeat([0.0, 1.0, 2.0], n // 3)
    g = pd.DataFrame({"g2": (group == 1).astype(float), "g3": (group == 2).astype(float)})
    x = rng.standard_normal(n)
    z = rng.standard_normal(n)
    y = 2.0 * g["g2"].to_numpy() + 1.0 * x + rng.standard_normal(n)
    return {"g": g, "x": pd.Series(x, name="x"), "z": pd.Series(z, name="z"), "y": y}


def _design(data, *terms):
    return DesignMatrix.from_blocks({t: data[t] for t in terms})


@pytest.fixture()
def fitted(data):
    return lm_rrpp(data["y"], _design(data, "g", "x", "z"), iterations=_ITER, seed=42)


class TestAnovaParts:
    """Per-permutation ANOVA quantities."""

    def test_observed_f_matches_formula(self, fitted):
        parts = anova_parts(fitted.permutations)
        r = fitted.permutations
        ms = r.ss[:, 0] / r.df
        expected = ms / (r.rss[:, 0] / r.df_residual)
        np.testing.assert_allclose(parts.F[:, 0], expected)
        np.testing.assert_allclose(parts.Rsq[:, 0], r.ss[:, 0] / r.tss[0])

    def test_sequential_cohen_f(self, fitted):
        parts = anova_parts(fitted.permutations)
        eta = parts.Rsq[:, 0]
        np.testing.assert_allclose(parts.cohenf[:, 0], eta / (1 - np.cumsum(eta)))

    def test_marginal_cohen_f(self, data):
        lm = lm_rrpp(data["y"], _design(data, "g", "x"), iterations=_ITER, ss_type="III")
        parts = anova_parts(lm.permutations)
        eta = parts.Rsq[:, 0]
        np.testing.assert_allclose(parts.cohenf[:, 0], eta / (1 - eta))

    def test_error_term(self, fitted):
        parts = anova_parts(fitted.permutations, error=["z", None, None])
        np.testing.assert_allclose(parts.F[0], parts.MS[0] / parts.MS[2])
        assert parts.error_terms == ["z", "Residuals", "Residuals"]

    def test_error_term_validation(self, fitted):
        with pytest.raises(ValueError, match="one error term per model term"):
            anova_parts(fitted.permutations, error=["z"])
        with pytest.raises(ValueError, match="not a model term"):
            anova_parts(fitted.permutations, error=["w", None, None])
        with pytest.raises(ValueError, match="its own error term"):
            anova_parts(fitted.permutations, error=["g", None, None])


class TestAnova:
    """ANOVA tables."""

    def test_table_layout(self, fitted):
        res = anova(fitted)
        assert list(res.table.index) == ["g", "x", "z", "Residuals", "Total"]
        assert list(res.table.columns) == ["Df", "SS", "MS", "Rsq", "F", "Z", "Pr(>F)"]
        assert res.table.loc["g", "Df"] == 2
        assert res.table.loc["Residuals", "Df"] == 25
        assert res.table.loc["Total", "Df"] == 29

    def test_ss_add_up(self, fitted):
        t = anova(fitted).table
        total = t.loc[["g", "x", "z", "Residuals"], "SS"].sum()
        assert total == pytest.approx(t.loc["Total", "SS"])

    def test_strong_effects_detected(self, fitted):
        res = anova(fitted)
        assert res.p_values[0] <= 0.05
        assert res.p_values[1] <= 0.05
        assert res.z_scores[0] > 1.5
        assert np.all((res.p_values > 0) & (res.p_values <= 1))

    def test_p_values_match_distribution(self, fitted):
        res = anova(fitted, effect_type="Rsq")
        dist = res.distributions["Rsq"]
        expected = np.mean(dist >= dist[:, :1], axis=1)
        np.testing.assert_allclose(res.p_values, expected)
        assert "Pr(>Rsq)" in res.table.columns

    def test_invalid_effect_type(self, fitted):
        with pytest.raises(ValueError, match="Invalid effect_type"):
            anova(fitted, effect_type="eta")

    def test_gls_switches_ss_to_f(self, data):
        n = data["y"].shape[0]
        lm = lm_rrpp(
            data["y"], _design(data, "g", "x"), iterations=_ITER, weights=np.linspace(1, 2, n)
        )
        with pytest.warns(UserWarning, match="using 'F' instead"):
            res = anova(lm, effect_type="SS")
        assert res.effect_type == "F"

    def test_to_dict(self, fitted):
        d = anova(fitted).to_dict()
        assert "distributions" not in d
        assert d["terms"] == ["g", "x", "z"]
        assert d["table"]["g"]["Df"] == 2


class TestCompareModels:
    """Multi-model comparison against a reference model."""

    def test_table(self, data):
        ref = lm_rrpp(data["y"], _design(data, "x"), iterations=_ITER)
        m1 = lm_rrpp(data["y"], _design(data, "x", "g"), iterations=_ITER)
        m2 = lm_rrpp(data["y"], _design(data, "x", "z"), iterations=_ITER)
        res = compare_models(ref, m1, m2, names=["plus_g", "plus_z"])
        t = res.table
        assert list(t.index) == ["reference", "plus_g", "plus_z"]
        assert t.loc["plus_g", "Df"] == 2
        assert t.loc["plus_z", "Df"] == 1
        assert t.loc["reference", "ResDf"] == 28
        assert np.isnan(t.loc["reference", "SS"])
        assert np.isnan(res.p_values[0])
        assert res.p_values[1] <= 0.05

    def test_observed_ss_is_rss_drop(self, data):
        ref = lm_rrpp(data["y"], _design(data, "x"), iterations=_ITER)
        m1 = lm_rrpp(data["y"], _design(data, "x", "g"), iterations=_ITER)
        res = compare_models(ref, m1)
        expected = ref.permutations.rss_model[0] - m1.permutations.rss_model[0]
        assert res.table.loc["model1", "SS"] == pytest.approx(expected)

    def test_requires_shared_schedule(self, data):
        ref = lm_rrpp(data["y"], _design(data, "x"), iterations=_ITER)
        other = lm_rrpp(data["y"], _design(data, "x", "g"), iterations=_ITER, seed=7)
        with pytest.raises(ValueError, match="different permutation schedule"):
            compare_models(ref, other)

    def test_requires_same_response(self, data):
        ref = lm_rrpp(data["y"], _design(data, "x"), iterations=_ITER)
        other = lm_rrpp(data["y"] + 1.0, _design(data, "x", "g"), iterations=_ITER)
        with pytest.raises(ValueError, match="different response"):
            compare_models(ref, other)

    def test_requires_same_covariance(self, data):
        n = len(data["y"])
        ref = lm_rrpp(data["y"], _design(data, "x"), covariance=np.eye(n), iterations=_ITER)
        other = lm_rrpp(
            data["y"], _design(data, "x", "g"), covariance=0.5 * np.eye(n) + 0.5, iterations=_ITER
        )
        with pytest.raises(ValueError, match="different weights or residual covariance"):
            compare_models(ref, other)

    def test_requires_same_weights(self, data):
        n = len(data["y"])
        ref = lm_rrpp(data["y"], _design(data, "x"), weights=np.ones(n), iterations=_ITER)
        other = lm_rrpp(
            data["y"], _design(data, "x", "g"), weights=np.linspace(1.0, 2.0, n), iterations=_ITER
        )
        with pytest.raises(ValueError, match="different weights or residual covariance"):
            compare_models(ref, other)

    def test_accepts_shared_covariance(self, data):
        n = len(data["y"])
        cov = 0.5 * np.eye(n) + 0.5
        ref = lm_rrpp(data["y"], _design(data, "x"), covariance=cov, iterations=_ITER)
        m1 = lm_rrpp(data["y"], _design(data, "x", "g"), covariance=cov, iterations=_ITER)
        res = compare_models(ref, m1)
        assert list(res.table.index) == ["reference", "model1"]

    def test_requires_a_model(self, data):
        ref = lm_rrpp(data["y"], _design(data, "x"), iterations=_ITER)
        with pytest.raises(ValueError, match="At least one model"):
            compare_models(ref)

    def test_effect_size_comparison(self, data):
        ref = lm_rrpp(data["y"], _design(data, "x"), iterations=_ITER)
        m1 = lm_rrpp(data["y"], _design(data, "x", "g"), iterations=_ITER)
        m2 = lm_rrpp(data["y"], _design(data, "x", "z"), iterations=_ITER)
        Z, P = compare_effect_sizes(compare_models(ref, m1, m2))
        assert Z.shape == (2, 2)
        assert Z.loc["model1", "model2"] == Z.loc["model2", "model1"]
        assert Z.loc["model1", "model1"] == 0.0
        assert 0 < P.loc["model1", "model2"] <= 1

    def test_effect_size_needs_two_models(self, data):
        ref = lm_rrpp(data["y"], _design(data, "x"), iterations=_ITER)
        m1 = lm_rrpp(data["y"], _design(data, "x", "g"), iterations=_ITER)
        with pytest.raises(ValueError, match="two compared models"):
            compare_effect_sizes(compare_models(ref, m1))
