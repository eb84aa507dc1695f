"""Full randomization (FRPP): one intercept-only pool shared by every term.

Y* = ŷ₀ + π(Y − ŷ₀) where ŷ₀ is the intercept-only fit.  Because ŷ₀ is
constant (OLS), this is the same as permuting the raw response rows.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from ..design import SSType
    from ..engine import ProjectorCache, ResidualPool


class FullRandomizationStrategy:
    """Intercept-only fitted values and residuals for every term."""

    name: str = "frpp"
    required_ss_type: SSType | None = None

    def residual_pools(self, Y: np.ndarray, cache: ProjectorCache) -> list[ResidualPool]:
        from ..engine import ResidualPool

        fitted = cache.null.project(Y)
        pool = ResidualPool(fitted, Y - fitted)
        return [pool] * len(cache.terms)
