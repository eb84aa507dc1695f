"""NumPy backend (always available).

Every kernel is a single ``einsum`` / ``matmul`` over the whole batch,
so a chunk of B pseudo-responses costs one BLAS-3 call per cached
operator instead of B matrix-vector products.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True)
class NumpyBackend:
    """NumPy compute backend.  Stateless, safe to cache and share across threads."""

    @property
    def name(self) -> str:
        return "numpy"

    @property
    def is_available(self) -> bool:  # noqa: PLR6301
        return True

    def batch_projected_ss(self, U: np.ndarray, Y_batch: np.ndarray) -> np.ndarray:
        if U.shape[1] == 0:
            return np.zeros(Y_batch.shape[0])
        coords = np.einsum("nr,bnp->brp", U, Y_batch, optimize=True)
        return np.einsum("brp,brp->b", coords, coords)

    def batch_project(self, U: np.ndarray, Y_batch: np.ndarray) -> np.ndarray:
        if U.shape[1] == 0:
            return np.zeros_like(Y_batch)
        coords = np.einsum("nr,bnp->brp", U, Y_batch, optimize=True)
        return np.einsum("nr,brp->bnp", U, coords, optimize=True)

    def batch_apply(self, H: np.ndarray, Y_batch: np.ndarray) -> np.ndarray:
        return np.matmul(H[None, :, :], Y_batch)
