"""Tests for design matrices and nested-model decomposition."""

import numpy as np
import pandas as pd
import pytest

from rrpp.design import (
    INTERCEPT,
    DesignMatrix,
    SSType,
    decompose,
    reduce_rank,
    term_containment,
)
from rrpp.exceptions import DesignError, RankTruncationWarning


def _two_factor_design(n=24, seed=42):
    rng = np.random.default_rng(seed)
    a = np.tile([0.0, 1.0], n // 2)
    b = np.repeat([0.0, 1.0], n // 2)
    blocks = {
        "a": pd.DataFrame({"a1": a}),
        "b": pd.DataFrame({"b1": b}),
        "a:b": pd.DataFrame({"a1:b1": a * b}),
        "x": pd.Series(rng.standard_normal(n), name="x"),
    }
    return DesignMatrix.from_blocks(blocks)


class TestSSType:
    """Tests for SSType.coerce."""

    def test_accepts_roman_numerals(self):
        assert SSType.coerce("I") is SSType.SEQUENTIAL
        assert SSType.coerce("ii") is SSType.HIERARCHICAL
        assert SSType.coerce("III") is SSType.MARGINAL

    def test_accepts_member_names(self):
        assert SSType.coerce("marginal") is SSType.MARGINAL

    def test_passes_members_through(self):
        assert SSType.coerce(SSType.HIERARCHICAL) is SSType.HIERARCHICAL

    def test_rejects_unknown(self):
        with pytest.raises(ValueError, match="Invalid ss_type"):
            SSType.coerce("IV")


class TestDesignMatrix:
    """Tests for DesignMatrix construction and sub-designs."""

    def test_from_blocks_layout(self):
        d = _two_factor_design()
        assert d.column_names == (INTERCEPT, "a1", "b1", "a1:b1", "x")
        np.testing.assert_array_equal(d.assign, [0, 1, 2, 3, 4])
        assert d.term_labels == ("a", "b", "a:b", "x")
        assert d.has_intercept
        assert d.n_obs == 24
        assert d.n_columns == 5

    def test_default_factors_split_on_colon(self):
        d = _two_factor_design()
        assert d.term_factors[2] == frozenset({"a", "b"})

    def test_values_are_read_only(self):
        d = _two_factor_design()
        with pytest.raises(ValueError):
            d.values[0, 0] = 5.0

    def test_select_terms_keeps_intercept(self):
        d = _two_factor_design()
        sub = d.select_terms([2])
        assert sub.column_names == (INTERCEPT, "b1")
        assert sub.term_labels == d.term_labels

    def test_select_no_terms_is_intercept_only(self):
        d = _two_factor_design()
        assert d.select_terms([]).column_names == (INTERCEPT,)

    def test_drop_columns(self):
        d = _two_factor_design()
        mask = np.array([False, False, False, True, False])
        assert "a1:b1" not in d.drop_columns(mask).column_names

    def test_without_intercept(self):
        d = DesignMatrix.from_blocks({"x": np.arange(5.0)}, intercept=False)
        assert not d.has_intercept
        assert d.column_names == ("x",)

    def test_duplicate_column_names_rejected(self):
        with pytest.raises(DesignError, match="unique"):
            DesignMatrix(np.ones((4, 2)), [1, 1], ("t",), ("c", "c"))

    def test_assign_length_mismatch(self):
        with pytest.raises(DesignError, match="assign"):
            DesignMatrix(np.ones((4, 2)), [1], ("t",), ("c1", "c2"))

    def test_mismatched_block_rows(self):
        with pytest.raises(DesignError, match="row counts"):
            DesignMatrix.from_blocks({"a": np.ones(4), "b": np.ones(5)})

    def test_empty_blocks_need_n_obs(self):
        with pytest.raises(DesignError, match="n_obs"):
            DesignMatrix.from_blocks({})
        d = DesignMatrix.from_blocks({}, n_obs=6)
        assert d.values.shape == (6, 1)


class TestTermContainment:
    """Tests for term_containment."""

    def test_interaction_contains_main_effects(self):
        C = term_containment([frozenset("a"), frozenset("b"), frozenset("ab")])
        assert C[0, 2] and C[1, 2]
        assert not C[2, 0]
        assert not C[0, 1]
        assert np.all(np.diag(C))


class TestReduceRank:
    """Tests for rank reduction."""

    def test_full_rank_untouched(self):
        d = _two_factor_design()
        reduced, dropped, truncated = reduce_rank(d)
        assert reduced is d
        assert dropped == ()
        assert truncated == ()

    def test_dependent_column_dropped_with_warning(self):
        rng = np.random.default_rng(42)
        x = rng.standard_normal(10)
        block = pd.DataFrame({"x1": x, "x2": 2 * x})
        d = DesignMatrix.from_blocks({"x": block})
        with pytest.warns(RankTruncationWarning, match="rank deficient"):
            reduced, dropped, truncated = reduce_rank(d)
        assert reduced.column_names == (INTERCEPT, "x1")
        assert dropped == ("x2",)
        assert truncated == ("x",)

    def test_intercept_never_dropped(self):
        d = DesignMatrix.from_blocks({"c": np.full(8, 3.0)})
        with pytest.raises(DesignError, match="no linearly independent columns"):
            reduce_rank(d)


class TestDecompose:
    """Tests for decompose under the three SS types."""

    def test_sequential_pairs(self):
        dec = decompose(_two_factor_design(), "I")
        assert dec.terms == ("a", "b", "a:b", "x")
        assert dec.pairs["a"].reduced.column_names == (INTERCEPT,)
        assert dec.pairs["a"].full.column_names == (INTERCEPT, "a1")
        assert dec.pairs["x"].reduced.column_names == (INTERCEPT, "a1", "b1", "a1:b1")
        assert dec.pairs["x"].full.column_names == dec.design.column_names

    def test_hierarchical_excludes_containing_terms(self):
        dec = decompose(_two_factor_design(), "II")
        assert dec.pairs["a"].reduced.column_names == (INTERCEPT, "b1", "x")
        assert dec.pairs["a"].full.column_names == (INTERCEPT, "a1", "b1", "x")
        assert dec.pairs["a:b"].reduced.column_names == (INTERCEPT, "a1", "b1", "x")

    def test_marginal_full_is_complete_model(self):
        dec = decompose(_two_factor_design(), "III")
        for pair in dec.pairs.values():
            assert pair.full is dec.design
            assert pair.added_columns == tuple(
                c for c in dec.design.column_names if c not in pair.reduced.column_names
            )
            assert not pair.is_degenerate

    def test_sequential_and_marginal_reduce_differently(self):
        rng = np.random.default_rng(42)
        n = 16
        d = DesignMatrix.from_blocks(
            {
                "A": pd.DataFrame({"A1": np.tile([0.0, 1.0], n // 2)}),
                "B": pd.Series(rng.standard_normal(n), name="B"),
            }
        )
        seq = decompose(d, "I")
        marg = decompose(d, "III")
        assert seq.pairs["A"].reduced.column_names == (INTERCEPT,)
        assert marg.pairs["A"].reduced.column_names == (INTERCEPT, "B")
        assert seq.pairs["A"].reduced.column_names != marg.pairs["A"].reduced.column_names
        assert seq.pairs["A"].reduced.n_obs == marg.pairs["A"].reduced.n_obs == n
        assert seq.n_obs == marg.n_obs == n

    def test_sequential_chain(self):
        dec = decompose(_two_factor_design(), "I")
        pairs = list(dec.pairs.values())
        assert pairs[0].reduced.column_names == (INTERCEPT,)
        for before, after in zip(pairs[:-1], pairs[1:], strict=True):
            assert after.reduced.column_names == before.full.column_names
        assert pairs[-1].full.column_names == dec.design.column_names

    def test_added_columns(self):
        dec = decompose(_two_factor_design(), "I")
        assert dec.pairs["a:b"].added_columns == ("a1:b1",)

    def test_no_terms(self):
        d = DesignMatrix.from_blocks({}, n_obs=10)
        dec = decompose(d)
        assert dec.pairs == {}
        assert dec.intercept_design.column_names == (INTERCEPT,)

    def test_zero_residual_df(self):
        d = DesignMatrix.from_blocks({"x": np.arange(2.0)})
        with pytest.raises(DesignError, match="no residual degrees of freedom"):
            decompose(d)

    def test_term_without_columns(self):
        d = DesignMatrix(np.ones((5, 1)), [0], ("a",), (INTERCEPT,))
        with pytest.raises(DesignError, match="no columns"):
            decompose(d)

    def test_records_nominal_and_realised_columns(self):
        rng = np.random.default_rng(42)
        x = rng.standard_normal(12)
        d = DesignMatrix.from_blocks({"x": pd.DataFrame({"x1": x, "x2": -x})})
        with pytest.warns(RankTruncationWarning):
            dec = decompose(d)
        assert dec.nominal_columns == 3
        assert dec.rank == 2
        assert dec.dropped_columns == ("x2",)
