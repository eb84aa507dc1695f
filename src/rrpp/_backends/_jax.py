"""JAX backend for the batched projection kernels.

The kernels are ``jax.vmap``-ed over the batch axis and JIT-compiled.
All arithmetic is float64 (``jax_enable_x64``): sums of squares are
differenced (``SS_full − SS_reduced``) and float32 round-off would be
of the same order as small term effects.

NumPy ↔ JAX boundary convention
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Inbound arrays are converted with ``jnp.asarray(x, dtype=jnp.float64)``;
results are returned as ``np.asarray(...)``.  Callers never see JAX
types.

If JAX is not installed the class can still be instantiated, but
``is_available`` is ``False`` and :func:`~._backends.resolve_backend`
refuses an explicit ``"jax"`` request.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

try:
    import jax

    jax.config.update("jax_enable_x64", True)

    import jax.numpy as jnp
    from jax import jit, vmap

    _CAN_IMPORT_JAX = True
except ImportError:
    _CAN_IMPORT_JAX = False


if _CAN_IMPORT_JAX:

    @jit
    def _projected_ss(U, Y_batch):
        def one(y):
            c = U.T @ y
            return jnp.sum(c * c)

        return vmap(one)(Y_batch)

    @jit
    def _project(U, Y_batch):
        return vmap(lambda y: U @ (U.T @ y))(Y_batch)

    @jit
    def _apply(H, Y_batch):
        return vmap(lambda y: H @ y)(Y_batch)


@dataclass(frozen=True)
class JaxBackend:
    """JAX compute backend (``jit`` + ``vmap`` over permutations)."""

    @property
    def name(self) -> str:
        return "jax"

    @property
    def is_available(self) -> bool:  # noqa: PLR6301
        return _CAN_IMPORT_JAX

    def batch_projected_ss(self, U: np.ndarray, Y_batch: np.ndarray) -> np.ndarray:
        if U.shape[1] == 0:
            return np.zeros(Y_batch.shape[0])
        return np.asarray(
            _projected_ss(
                jnp.asarray(U, dtype=jnp.float64),
                jnp.asarray(Y_batch, dtype=jnp.float64),
            )
        )

    def batch_project(self, U: np.ndarray, Y_batch: np.ndarray) -> np.ndarray:
        if U.shape[1] == 0:
            return np.zeros_like(Y_batch)
        return np.asarray(
            _project(
                jnp.asarray(U, dtype=jnp.float64),
                jnp.asarray(Y_batch, dtype=jnp.float64),
            )
        )

    def batch_apply(self, H: np.ndarray, Y_batch: np.ndarray) -> np.ndarray:
        if H.shape[0] == 0:
            return np.zeros((Y_batch.shape[0], 0, Y_batch.shape[2]))
        return np.asarray(
            _apply(
                jnp.asarray(H, dtype=jnp.float64),
                jnp.asarray(Y_batch, dtype=jnp.float64),
            )
        )
