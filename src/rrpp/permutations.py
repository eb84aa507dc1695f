"""Permutation schedules for residual randomization.

A :class:`PermutationSchedule` is the ordered list of row orderings used
to build every empirical null distribution of an analysis.  Row 0 is
always the identity, so index 0 of every distribution is the observed
statistic.  The schedule is generated once per analysis and never
changes, which lets several models (or a later SSCP pass) reuse it and
reproduce the same p-values.

Generation strategies
---------------------
Rows 1..B are drawn *without* duplicates whenever the reference set is
large enough:

1. **Lehmer-code sampling** (small reference sets): every ordering of
   ``n`` items has a unique lexicographic rank ``k ∈ [0, n!)``.  Ranks
   are drawn without replacement and decoded through the factorial
   number system, O(B·n) regardless of ``n!``.  Rank 0 is the identity,
   so excluding it means drawing from ``[1, n!)``.

2. **Vectorised batch generation** (large reference sets): all B rows
   are shuffled in one ``Generator.permuted`` call.  When the
   birthday bound ``B(B−1) / (2·n!)`` is not negligible a hash-set pass
   removes duplicates and refills the gaps.

Blocked designs
---------------
With ``blocks`` (a label per row), each row of the schedule shuffles
indices only among rows that share a label.  The reference set has
``∏_b n_b!`` members; singleton blocks are pinned.  This restricts the
null hypothesis to exchangeability within blocks.

When fewer unique orderings exist than were requested, the shortfall
is drawn with replacement (with a warning) so the schedule always has
``iterations + 1`` rows.

References:
    Phipson, B. & Smyth, G. K. (2010). Permutation p-values should
    never be zero. *Statistical Applications in Genetics and Molecular
    Biology*, 9(1), Article 39.
"""

from __future__ import annotations

import logging
import math
import warnings
from collections.abc import Iterator
from dataclasses import dataclass
from functools import reduce
from typing import Any

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

_LEHMER_THRESHOLD = 50_000

# ------------------------------------------------------------------ #
# Lehmer code (factorial number system)
# ------------------------------------------------------------------ #
#
# k = d₁·(n−1)! + d₂·(n−2)! + ··· + dₙ·0!
#
# Each digit dᵢ selects the dᵢ-th remaining element of a shrinking pool.
# Example, n=3, k=4 → digits [2, 0, 0] → [2, 0, 1].


def _unrank_permutation(k: int, n: int) -> list[int]:
    """Convert rank *k* to the *k*-th lexicographic permutation of ``[0..n-1]``."""
    available = list(range(n))
    result: list[int] = []
    for i in range(n, 0, -1):
        idx, k = divmod(k, math.factorial(i - 1))
        result.append(available.pop(idx))
    return result


def _unrank_within_blocks(
    rank: int,
    block_members: list[np.ndarray],
    block_factorials: list[int],
    n_samples: int,
) -> np.ndarray:
    """Decode a mixed-radix composite rank into a within-block permutation.

    The composite rank packs one Lehmer rank per block, least
    significant block first.
    """
    perm = np.arange(n_samples, dtype=np.intp)
    remaining = rank
    for members, fact in zip(block_members, block_factorials, strict=True):
        if len(members) <= 1:
            continue
        block_rank = remaining % fact
        remaining //= fact
        perm[members] = members[_unrank_permutation(block_rank, len(members))]
    return perm


def _block_members(blocks: np.ndarray) -> list[np.ndarray]:
    codes, _ = pd.factorize(blocks, sort=True)
    if np.any(codes < 0):
        raise ValueError("blocks must not contain missing values.")
    return [np.flatnonzero(codes == c) for c in range(codes.max() + 1)]


def count_unique_permutations(
    n_samples: int,
    blocks: Any = None,
    cap: int | None = None,
) -> int:
    """Number of distinct orderings, optionally capped to avoid huge integers."""
    if blocks is None:
        sizes = [n_samples]
    else:
        sizes = [len(m) for m in _block_members(np.asarray(blocks))]
    if cap is None:
        return reduce(lambda a, b: a * b, (math.factorial(s) for s in sizes), 1)
    total = 1
    for s in sizes:
        for f in range(2, s + 1):
            total *= f
            if total >= cap:
                return cap
    return total


# ------------------------------------------------------------------ #
# Unique generators
# ------------------------------------------------------------------ #


def _dedup_fill(
    batch: np.ndarray,
    n_permutations: int,
    exclude_identity: bool,
    redraw: Any,
) -> np.ndarray:
    """Keep first occurrences in *batch*, then redraw until B rows are unique.

    Rows still missing after the redraw budget is spent are filled with
    draws that may repeat earlier ones (with a warning).
    """
    n_samples = batch.shape[1]
    seen: set[tuple[int, ...]] = set()
    if exclude_identity:
        seen.add(tuple(range(n_samples)))

    result = np.empty((n_permutations, n_samples), dtype=np.intp)
    count = 0
    for row in batch:
        key = tuple(row.tolist())
        if key not in seen:
            seen.add(key)
            result[count] = row
            count += 1
            if count == n_permutations:
                return result

    max_attempts = n_permutations * 20 + 1000
    attempts = 0
    while count < n_permutations and attempts < max_attempts:
        perm = redraw()
        key = tuple(perm.tolist())
        if key not in seen:
            seen.add(key)
            result[count] = perm
            count += 1
        attempts += 1

    if count < n_permutations:
        warnings.warn(
            f"Found only {count} distinct permutations after {attempts} "
            f"redraws; the remaining {n_permutations - count} are drawn "
            f"with replacement.",
            UserWarning,
            stacklevel=3,
        )
        for i in range(count, n_permutations):
            result[i] = redraw()
    return result


def generate_unique_permutations(
    n_samples: int,
    n_permutations: int,
    random_state: Any = None,
    exclude_identity: bool = True,
    max_exhaustive: int = 10,
) -> np.ndarray:
    """Draw distinct permutations of ``range(n_samples)``.

    Args:
        n_samples: Length of each permutation.
        n_permutations: Number of distinct permutations requested.
        random_state: Seed or ``np.random.Generator``.
        exclude_identity: Never return the identity ordering.
        max_exhaustive: Use Lehmer-code sampling when
            ``n_samples <= max_exhaustive``.

    Returns:
        Array of shape ``(n_permutations, n_samples)``.

    Raises:
        ValueError: If more permutations are requested than exist.
    """
    rng = np.random.default_rng(random_state)

    if n_samples <= max_exhaustive:
        total = math.factorial(n_samples)
        start = 1 if exclude_identity else 0
        if n_permutations > total - start:
            raise ValueError(
                f"Requested {n_permutations} unique permutations but only "
                f"{total - start} are available for n_samples={n_samples} "
                f"(exclude_identity={exclude_identity})."
            )
        ranks = rng.choice(total - start, size=n_permutations, replace=False) + start
        return np.array(
            [_unrank_permutation(int(k), n_samples) for k in ranks],
            dtype=np.intp,
        ).reshape(n_permutations, n_samples)

    collision_prob = (
        n_permutations * (n_permutations - 1) / (2 * math.factorial(n_samples))
        if n_samples < 170
        else 0.0
    )
    batch = np.tile(np.arange(n_samples, dtype=np.intp), (n_permutations, 1))
    rng.permuted(batch, axis=1, out=batch)
    if collision_prob < 1e-9 and not exclude_identity:
        return batch
    return _dedup_fill(
        batch, n_permutations, exclude_identity, lambda: rng.permutation(n_samples)
    )


def generate_within_block_permutations(
    n_samples: int,
    n_permutations: int,
    blocks: Any,
    random_state: Any = None,
    exclude_identity: bool = True,
) -> np.ndarray:
    """Draw distinct permutations that shuffle rows only within blocks.

    Args:
        n_samples: Total number of observations.
        n_permutations: Number of distinct permutations requested.
        blocks: Block label per observation, shape ``(n_samples,)``.
        random_state: Seed or ``np.random.Generator``.
        exclude_identity: Never return the identity ordering.

    Returns:
        Array of shape ``(n_permutations, n_samples)``.

    Raises:
        ValueError: If *blocks* has the wrong length or more
            permutations are requested than exist.
    """
    rng = np.random.default_rng(random_state)
    blocks = np.asarray(blocks)
    if blocks.shape != (n_samples,):
        msg = f"blocks must have shape ({n_samples},), got {blocks.shape}."
        raise ValueError(msg)

    members = _block_members(blocks)
    start = 1 if exclude_identity else 0
    available = count_unique_permutations(
        n_samples, blocks, cap=n_permutations + start + 1
    ) - start
    if n_permutations > available:
        raise ValueError(
            f"Requested {n_permutations} unique within-block permutations "
            f"but only {available} are available."
        )

    sizes = [len(m) for m in members]
    total_exact = count_unique_permutations(n_samples, blocks, cap=_LEHMER_THRESHOLD + 1)
    if total_exact <= _LEHMER_THRESHOLD:
        factorials = [math.factorial(s) for s in sizes]
        ranks = rng.choice(total_exact - start, size=n_permutations, replace=False) + start
        result = np.empty((n_permutations, n_samples), dtype=np.intp)
        for i, rank in enumerate(ranks):
            result[i] = _unrank_within_blocks(int(rank), members, factorials, n_samples)
        return result

    batch = np.tile(np.arange(n_samples, dtype=np.intp), (n_permutations, 1))
    for idx in members:
        if len(idx) > 1:
            block = batch[:, idx].copy()
            rng.permuted(block, axis=1, out=block)
            batch[:, idx] = block

    def _redraw() -> np.ndarray:
        perm = np.arange(n_samples, dtype=np.intp)
        for idx in members:
            if len(idx) > 1:
                perm[idx] = rng.permutation(idx)
        return perm

    return _dedup_fill(batch, n_permutations, exclude_identity, _redraw)


def _draw_with_replacement(
    n_samples: int,
    n_permutations: int,
    rng: np.random.Generator,
    members: list[np.ndarray] | None,
) -> np.ndarray:
    batch = np.tile(np.arange(n_samples, dtype=np.intp), (n_permutations, 1))
    if members is None:
        rng.permuted(batch, axis=1, out=batch)
        return batch
    for idx in members:
        if len(idx) > 1:
            block = batch[:, idx].copy()
            rng.permuted(block, axis=1, out=block)
            batch[:, idx] = block
    return batch


# ------------------------------------------------------------------ #
# PermutationSchedule
# ------------------------------------------------------------------ #


@dataclass(frozen=True, eq=False)
class PermutationSchedule:
    """Immutable, ordered sequence of row permutations.

    ``indices[0]`` is the identity.  ``indices[i]`` reorders residuals
    as ``residuals[indices[i]]``.
    """

    indices: np.ndarray
    seed: int
    blocks: np.ndarray | None = None
    unique: bool = True
    """``False`` when part of the schedule was drawn with replacement."""

    @property
    def n_obs(self) -> int:
        return self.indices.shape[1]

    @property
    def iterations(self) -> int:
        """Number of random permutations (excluding the identity)."""
        return self.indices.shape[0] - 1

    @property
    def n_permutations(self) -> int:
        """Total rows, identity included."""
        return self.indices.shape[0]

    def __len__(self) -> int:
        return self.indices.shape[0]

    def __getitem__(self, i: int | slice) -> np.ndarray:
        return self.indices[i]

    def __iter__(self) -> Iterator[np.ndarray]:
        return iter(self.indices)

    def compatible_with(self, other: PermutationSchedule) -> bool:
        """Whether *other* holds exactly the same permutations."""
        return self.indices.shape == other.indices.shape and bool(
            np.array_equal(self.indices, other.indices)
        )


def resolve_seed(seed: Any, iterations: int) -> int:
    """Turn the user-facing seed into a concrete integer.

    ``None`` resolves to *iterations*, so repeated runs reproduce the
    same p-values by default; ``"random"`` draws fresh entropy once.
    """
    if seed is None:
        return int(iterations)
    if isinstance(seed, str):
        if seed.strip().lower() != "random":
            msg = f"seed must be an integer, None, or 'random', got {seed!r}."
            raise ValueError(msg)
        return int(np.random.SeedSequence().entropy)
    if isinstance(seed, (bool, np.bool_)) or not isinstance(seed, (int, np.integer)):
        msg = f"seed must be an integer, None, or 'random', got {seed!r}."
        raise TypeError(msg)
    return int(seed)


def schedule(
    n: int,
    iterations: int,
    seed: Any = None,
    blocks: Any = None,
) -> PermutationSchedule:
    """Build a :class:`PermutationSchedule` of ``iterations + 1`` rows.

    Args:
        n: Number of observations.
        iterations: Number of random permutations.
        seed: Integer seed, ``None`` (deterministic default) or
            ``"random"``.
        blocks: Optional block label per observation; rows are only
            exchanged within blocks.

    Returns:
        The schedule, identity first.

    Raises:
        ValueError: If *iterations* < 1, *n* < 2, or *blocks* has the
            wrong length.
    """
    n = int(n)
    iterations = int(iterations)
    if n < 2:
        raise ValueError("At least two observations are required.")
    if iterations < 1:
        raise ValueError("iterations must be a positive integer.")

    resolved = resolve_seed(seed, iterations)
    rng = np.random.default_rng(resolved)

    block_arr = None
    members = None
    if blocks is not None:
        block_arr = np.asarray(blocks)
        if block_arr.shape != (n,):
            msg = f"blocks must have shape ({n},), got {block_arr.shape}."
            raise ValueError(msg)
        members = _block_members(block_arr)

    available = count_unique_permutations(n, block_arr, cap=iterations + 2) - 1
    n_unique = min(iterations, available)
    unique = n_unique == iterations

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        if n_unique == 0:
            drawn = np.empty((0, n), dtype=np.intp)
        elif block_arr is None:
            drawn = generate_unique_permutations(n, n_unique, random_state=rng)
        else:
            drawn = generate_within_block_permutations(n, n_unique, block_arr, random_state=rng)
    # A warning here means the redraw budget ran out and some rows repeat.
    repeated = bool(caught)
    for w in caught:
        warnings.warn(str(w.message), w.category, stacklevel=2)

    if not unique:
        warnings.warn(
            f"Only {available} distinct non-identity permutations exist, but "
            f"{iterations} were requested.  The remaining "
            f"{iterations - n_unique} are drawn with replacement.",
            UserWarning,
            stacklevel=2,
        )
        extra = _draw_with_replacement(n, iterations - n_unique, rng, members)
        drawn = np.vstack([drawn, extra])
    unique = unique and not repeated

    indices = np.vstack([np.arange(n, dtype=np.intp)[None, :], drawn])
    indices.setflags(write=False)
    logger.debug(
        "Built schedule: n=%d, iterations=%d, seed=%d, blocked=%s.",
        n, iterations, resolved, block_arr is not None,
    )
    return PermutationSchedule(indices, resolved, block_arr, unique)


__all__ = [
    "PermutationSchedule",
    "count_unique_permutations",
    "generate_unique_permutations",
    "generate_within_block_permutations",
    "resolve_seed",
    "schedule",
]
