"""Compute-backend selection for the permutation loop.

Every chunk of pseudo-responses is projected onto the cached bases by
one of two kernels sets: plain NumPy ``einsum`` (always available) or
JAX ``vmap`` in float64 (optional extra).  The choice is global, but
:class:`~rrpp.engine.RRPPEngine` and :func:`~rrpp.sscp.manova_update`
also take an explicit ``backend=`` argument that bypasses it.

Resolution order (first match wins):
    1. Programmatic override via :func:`set_backend` or
       :func:`use_backend`.
    2. The ``RRPP_BACKEND`` environment variable.
    3. Auto-detection: ``"jax"`` if JAX is importable, else ``"numpy"``.

Examples:
    Pin NumPy for a whole session from the shell::

        export RRPP_BACKEND=numpy

    Or for one block of code::

        with rrpp.use_backend("numpy"):
            fit = rrpp.lm_rrpp(Y, design)
"""

from __future__ import annotations

import os
from collections.abc import Iterator
from contextlib import contextmanager

_ENV_VAR = "RRPP_BACKEND"

_KERNELS = ("jax", "numpy")
_VALID_BACKENDS = {*_KERNELS, "auto"}

# None (or "auto") means no programmatic override.
_backend_override: str | None = None


def _jax_is_available() -> bool:
    try:
        import jax  # noqa: F401
    except ImportError:
        return False
    return True


def _normalise(name: str) -> str:
    key = name.strip().lower()
    if key not in _VALID_BACKENDS:
        raise ValueError(
            f"Unknown backend '{name}'. Choose from: {sorted(_VALID_BACKENDS)}"
        )
    return key


def get_backend() -> str:
    """Return the kernel set the next analysis will use.

    Unrecognised ``RRPP_BACKEND`` values are ignored rather than
    raised, so a stale environment never breaks an import.
    """
    if _backend_override not in (None, "auto"):
        return _backend_override

    env = os.environ.get(_ENV_VAR, "").strip().lower()
    if env in _KERNELS:
        return env

    return "jax" if _jax_is_available() else "numpy"


def set_backend(name: str) -> None:
    """Pin the backend for every later analysis.

    Args:
        name: ``"jax"``, ``"numpy"``, or ``"auto"`` to go back to the
            environment variable and auto-detection (case-insensitive).

    Raises:
        ValueError: If *name* is not a recognised backend.
    """
    global _backend_override
    _backend_override = _normalise(name)


@contextmanager
def use_backend(name: str) -> Iterator[str]:
    """Temporarily pin the backend, restoring the previous override on exit.

    Yields:
        The backend name that is active inside the block.

    Raises:
        ValueError: If *name* is not a recognised backend.
    """
    global _backend_override
    previous = _backend_override
    _backend_override = _normalise(name)
    try:
        yield get_backend()
    finally:
        _backend_override = previous
