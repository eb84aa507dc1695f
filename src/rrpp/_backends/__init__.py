"""Backend abstraction for the batched projections of the permutation loop.

Each backend implements :class:`BackendProtocol`: a handful of kernels
that apply one cached operator (an orthonormal basis ``U`` or a
coefficient operator ``H``) to a *batch* of pseudo-responses of shape
``(B, n, p)``.  The engine builds one batch per chunk of the
permutation schedule and never branches on the backend itself.

Resolution follows the policy set by :mod:`._config`:

1. Programmatic override via :func:`~rrpp.set_backend`.
2. ``RRPP_BACKEND`` environment variable.
3. Auto-detection: ``"jax"`` if importable, else ``"numpy"``.

When ``"jax"`` is explicitly requested but JAX is not installed an
:class:`ImportError` is raised; only ``"auto"`` falls back silently.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

import numpy as np

from .._config import get_backend

# ------------------------------------------------------------------ #
# BackendProtocol
# ------------------------------------------------------------------ #


@runtime_checkable
class BackendProtocol(Protocol):
    """Interface that every compute backend must implement.

    All methods accept and return NumPy arrays.
    """

    @property
    def name(self) -> str: ...

    @property
    def is_available(self) -> bool:
        """Whether the backend's dependencies are importable."""
        ...

    def batch_projected_ss(self, U: np.ndarray, Y_batch: np.ndarray) -> np.ndarray:
        """``‖U' y_b‖²`` for every batch member.

        Args:
            U: Orthonormal basis ``(n, r)``.
            Y_batch: Pseudo-responses ``(B, n, p)``.

        Returns:
            Array of shape ``(B,)``.
        """
        ...

    def batch_project(self, U: np.ndarray, Y_batch: np.ndarray) -> np.ndarray:
        """Fitted values ``U U' y_b``, shape ``(B, n, p)``."""
        ...

    def batch_apply(self, H: np.ndarray, Y_batch: np.ndarray) -> np.ndarray:
        """Left-multiply every batch member by *H* (``(k, n)``), shape ``(B, k, p)``."""
        ...


# ------------------------------------------------------------------ #
# Backend resolution
# ------------------------------------------------------------------ #

_BACKEND_CACHE: dict[str, BackendProtocol] = {}


def resolve_backend(name: str | None = None) -> BackendProtocol:
    """Return a :class:`BackendProtocol` instance for *name*.

    Args:
        name: ``"numpy"``, ``"jax"``, or ``None`` for the policy default.

    Raises:
        ImportError: If ``"jax"`` is explicitly requested but JAX is
            not installed.
        ValueError: If *name* is not a recognised backend.
    """
    if name is None:
        name = get_backend()
    name = name.strip().lower()

    if name in _BACKEND_CACHE:
        return _BACKEND_CACHE[name]

    if name == "numpy":
        from ._numpy import NumpyBackend

        backend: BackendProtocol = NumpyBackend()

    elif name == "jax":
        from ._jax import JaxBackend

        jax_backend = JaxBackend()
        if not jax_backend.is_available:
            msg = (
                "Backend 'jax' was explicitly requested but JAX is "
                "not installed.  Install JAX (`pip install jax`) or "
                "use set_backend('numpy')."
            )
            raise ImportError(msg)
        backend = jax_backend

    else:
        msg = f"Unknown backend {name!r}.  Choose 'numpy' or 'jax'."
        raise ValueError(msg)

    _BACKEND_CACHE[name] = backend
    return backend


__all__ = ["BackendProtocol", "resolve_backend"]
