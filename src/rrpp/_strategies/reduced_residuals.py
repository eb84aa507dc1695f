"""Randomization of reduced-model residuals (RRPP).

For term *j*, fit the reduced model to get ŷ₍ⱼ₎ and e₍ⱼ₎ = Y − ŷ₍ⱼ₎.
Each permutation forms Y* = ŷ₍ⱼ₎ + π(e₍ⱼ₎).  Using a term-specific
pool keeps the null distribution exact for the term being tested even
when other terms explain a large share of the variance; a single
intercept-only pool inflates type I error in that case.

References:
    Collyer, M. L., Sekora, D. J. & Adams, D. C. (2015). *Heredity*,
    115, 357–365.

    Freedman, D. & Lane, D. (1983). A nonstochastic interpretation of
    reported significance levels. *Journal of Business & Economic
    Statistics*, 1(4), 292–298.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from ..design import SSType
    from ..engine import ProjectorCache, ResidualPool


class ReducedResidualStrategy:
    """Term-specific reduced-model residual pools (the default)."""

    name: str = "rrpp"
    required_ss_type: SSType | None = None

    def residual_pools(self, Y: np.ndarray, cache: ProjectorCache) -> list[ResidualPool]:
        from ..engine import ResidualPool

        pools = []
        for reduced in cache.reduced:
            fitted = reduced.project(Y)
            pools.append(ResidualPool(fitted, Y - fitted))
        return pools
