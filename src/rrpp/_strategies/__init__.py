"""Residual-randomization strategy registry and protocol.

A strategy decides which *fitted values* and which *residual pool* form
each term's pseudo-response ``y* = fitted + residuals[perm]``:

* ``"rrpp"`` — each term uses its own reduced-model fitted values and
  residuals (randomization of residuals in a permutation procedure).
* ``"frpp"`` — every term uses the intercept-only fitted values and
  residuals, which is equivalent to permuting the raw response.
* ``"ter_braak"`` — reduced-model fitted values with the residuals of
  the complete model.  Only meaningful when every reduced model is the
  complete model minus one term (type III sums of squares).

Strategies work on cached orthonormal bases, not on the observed
response stored in a fit, so the same strategy can build pools for a
transformed response (e.g. principal-component scores).

Adding a new strategy
~~~~~~~~~~~~~~~~~~~~~
1. Create a module under ``_strategies/`` with a class satisfying
   :class:`RandomizationStrategy`.
2. Register it in :func:`_ensure_registry`.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

import numpy as np

if TYPE_CHECKING:
    from ..design import SSType
    from ..engine import ProjectorCache, ResidualPool

# ------------------------------------------------------------------ #
# Strategy protocol
# ------------------------------------------------------------------ #


@runtime_checkable
class RandomizationStrategy(Protocol):
    """Interface every residual-randomization strategy satisfies."""

    name: str
    """Registry key."""

    required_ss_type: SSType | None
    """SS type the strategy is restricted to, or ``None``."""

    def residual_pools(
        self, Y: np.ndarray, cache: ProjectorCache
    ) -> list[ResidualPool]:
        """Build one pool per term.

        Args:
            Y: Transformed-space response ``(n, p)`` (offset removed).
            cache: Observed fits for every nested model.

        Returns:
            Pools in term order.
        """
        ...


# ------------------------------------------------------------------ #
# Registry
# ------------------------------------------------------------------ #

_STRATEGY_REGISTRY: dict[str, type[RandomizationStrategy]] = {}


def _ensure_registry() -> None:
    """Populate the registry on first access."""
    if _STRATEGY_REGISTRY:
        return

    from .full_randomization import FullRandomizationStrategy
    from .reduced_residuals import ReducedResidualStrategy
    from .ter_braak import TerBraakStrategy

    _STRATEGY_REGISTRY.update(
        {
            "rrpp": ReducedResidualStrategy,
            "frpp": FullRandomizationStrategy,
            "ter_braak": TerBraakStrategy,
        }
    )


def resolve_strategy(method: str) -> RandomizationStrategy:
    """Return a strategy instance for *method*.

    Args:
        method: ``"rrpp"``, ``"frpp"``, or ``"ter_braak"``.

    Raises:
        ValueError: If *method* is not recognised.
    """
    _ensure_registry()
    cls = _STRATEGY_REGISTRY.get(str(method).strip().lower())
    if cls is None:
        valid = ", ".join(sorted(_STRATEGY_REGISTRY))
        raise ValueError(f"Invalid randomization '{method}'. Choose from: {valid}.")
    return cls()


__all__ = [
    "RandomizationStrategy",
    "resolve_strategy",
]
