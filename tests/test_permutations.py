"""Tests for the permutations module."""

import warnings

import numpy as np
import pytest

from rrpp import permutations
from rrpp.permutations import (
    PermutationSchedule,
    _unrank_permutation,
    count_unique_permutations,
    generate_unique_permutations,
    generate_within_block_permutations,
    resolve_seed,
    schedule,
)


class TestUnrankPermutation:
    """Tests for the Lehmer-code unranking function."""

    def test_rank_zero_is_identity(self):
        assert _unrank_permutation(0, 4) == [0, 1, 2, 3]

    def test_last_rank_is_reverse(self):
        assert _unrank_permutation(23, 4) == [3, 2, 1, 0]

    def test_known_rank(self):
        assert _unrank_permutation(4, 3) == [2, 0, 1]

    def test_all_ranks_unique(self):
        perms = [tuple(_unrank_permutation(k, 4)) for k in range(24)]
        assert len(set(perms)) == 24


class TestCountUniquePermutations:
    """Tests for count_unique_permutations."""

    def test_factorial(self):
        assert count_unique_permutations(5) == 120

    def test_blocks_multiply(self):
        blocks = np.array([0, 0, 0, 1, 1])
        assert count_unique_permutations(5, blocks) == 6 * 2

    def test_cap(self):
        assert count_unique_permutations(30, cap=1000) == 1000


class TestGenerateUniquePermutations:
    """Tests for generate_unique_permutations."""

    def test_shape(self):
        result = generate_unique_permutations(10, 50, random_state=42)
        assert result.shape == (50, 10)

    def test_uniqueness(self):
        result = generate_unique_permutations(8, 100, random_state=42)
        assert len({tuple(row) for row in result}) == 100

    def test_excludes_identity(self):
        result = generate_unique_permutations(6, 100, random_state=42)
        identity = tuple(range(6))
        assert all(tuple(row) != identity for row in result)

    def test_large_n_vectorised_path(self):
        result = generate_unique_permutations(40, 200, random_state=42)
        assert result.shape == (200, 40)
        assert len({tuple(row) for row in result}) == 200
        np.testing.assert_array_equal(np.sort(result, axis=1), np.tile(np.arange(40), (200, 1)))

    def test_too_many_requested(self):
        with pytest.raises(ValueError, match="Requested"):
            generate_unique_permutations(3, 6, random_state=42)

    def test_exhausted_redraws_fill_with_replacement(self):
        # The batch path does not count the reference set; 3! - 1 = 5 exist.
        with pytest.warns(UserWarning, match="with replacement"):
            result = generate_unique_permutations(3, 6, random_state=42, max_exhaustive=0)
        assert result.shape == (6, 3)
        np.testing.assert_array_equal(np.sort(result, axis=1), np.tile(np.arange(3), (6, 1)))
        head = {tuple(row) for row in result[:5]}
        assert len(head) == 5
        assert (0, 1, 2) not in head

    def test_reproducible(self):
        a = generate_unique_permutations(12, 20, random_state=7)
        b = generate_unique_permutations(12, 20, random_state=7)
        np.testing.assert_array_equal(a, b)


class TestWithinBlockPermutations:
    """Tests for generate_within_block_permutations."""

    def test_rows_stay_in_their_block(self):
        blocks = np.repeat([0, 1, 2], 4)
        result = generate_within_block_permutations(12, 100, blocks, random_state=42)
        for row in result:
            np.testing.assert_array_equal(blocks[row], blocks)

    def test_uniqueness(self):
        blocks = np.repeat([0, 1], 4)
        result = generate_within_block_permutations(8, 100, blocks, random_state=42)
        assert len({tuple(row) for row in result}) == 100

    def test_too_many_requested(self):
        blocks = np.array([0, 0, 1, 1])
        with pytest.raises(ValueError, match="Requested"):
            generate_within_block_permutations(4, 4, blocks, random_state=42)

    def test_wrong_shape(self):
        with pytest.raises(ValueError, match="shape"):
            generate_within_block_permutations(4, 1, np.array([0, 1]), random_state=42)


class TestResolveSeed:
    """Tests for resolve_seed."""

    def test_none_is_iterations(self):
        assert resolve_seed(None, 999) == 999

    def test_integer_passthrough(self):
        assert resolve_seed(np.int64(5), 10) == 5

    def test_random_draws_entropy(self):
        assert isinstance(resolve_seed("random", 10), int)

    def test_bad_string(self):
        with pytest.raises(ValueError):
            resolve_seed("sometimes", 10)

    def test_bad_type(self):
        with pytest.raises(TypeError, match="seed"):
            resolve_seed(1.5, 10)
        with pytest.raises(TypeError, match="seed"):
            resolve_seed(True, 10)


class TestSchedule:
    """Tests for schedule()."""

    def test_identity_first_and_length(self):
        s = schedule(20, 99, seed=42)
        assert isinstance(s, PermutationSchedule)
        assert len(s) == 100
        assert s.iterations == 99
        assert s.n_obs == 20
        np.testing.assert_array_equal(s[0], np.arange(20))
        assert s.unique

    def test_indices_read_only(self):
        s = schedule(10, 5, seed=42)
        with pytest.raises(ValueError):
            s.indices[1, 0] = 3

    def test_default_seed_is_deterministic(self):
        a = schedule(15, 50)
        b = schedule(15, 50)
        assert a.seed == 50
        assert a.compatible_with(b)

    def test_seeds_differ(self):
        a = schedule(15, 50, seed=1)
        b = schedule(15, 50, seed=2)
        assert not a.compatible_with(b)

    def test_blocks_respected(self):
        blocks = np.repeat(["a", "b", "c"], 5)
        s = schedule(15, 40, seed=42, blocks=blocks)
        for row in s:
            np.testing.assert_array_equal(blocks[row], blocks)
        np.testing.assert_array_equal(s.blocks, blocks)

    def test_shortfall_drawn_with_replacement(self):
        with pytest.warns(UserWarning, match="with replacement"):
            s = schedule(3, 10, seed=42)
        assert len(s) == 11
        assert not s.unique
        np.testing.assert_array_equal(np.sort(s.indices, axis=1), np.tile(np.arange(3), (11, 1)))

    def test_repeated_rows_clear_unique_flag(self, monkeypatch):
        def _repeating(n_samples, n_permutations, random_state=None):
            warnings.warn("Rows drawn with replacement.", UserWarning, stacklevel=2)
            return np.tile(np.arange(n_samples)[::-1], (n_permutations, 1))

        monkeypatch.setattr(permutations, "generate_unique_permutations", _repeating)
        with pytest.warns(UserWarning, match="with replacement"):
            s = schedule(12, 5, seed=42)
        assert len(s) == 6
        assert not s.unique

    def test_invalid_iterations(self):
        with pytest.raises(ValueError, match="iterations"):
            schedule(10, 0)

    def test_too_few_observations(self):
        with pytest.raises(ValueError, match="two observations"):
            schedule(1, 10)

    def test_bad_block_length(self):
        with pytest.raises(ValueError, match="blocks"):
            schedule(6, 10, blocks=[0, 1])
