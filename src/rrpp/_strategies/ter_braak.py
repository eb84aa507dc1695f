"""ter Braak (1992): permute residuals of the complete model.

Y* = ŷ₍ⱼ₎ + π(e_full) where ŷ₍ⱼ₎ is term *j*'s reduced-model fit and
e_full the residuals of the complete model.  The pseudo-response is
built around the alternative hypothesis rather than the null, which is
only coherent when each reduced model is the complete model minus the
tested term, so the strategy is restricted to type III sums of squares.
The identity row still evaluates the observed data.

Reference:
    ter Braak, C. J. F. (1992). Permutation versus bootstrap
    significance tests in multiple regression and ANOVA. In
    *Bootstrapping and Related Techniques*, 79–86. Springer.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

from ..design import SSType

if TYPE_CHECKING:
    from ..engine import ProjectorCache, ResidualPool


class TerBraakStrategy:
    """Reduced-model fitted values plus complete-model residuals."""

    name: str = "ter_braak"
    required_ss_type: SSType | None = SSType.MARGINAL

    def residual_pools(self, Y: np.ndarray, cache: ProjectorCache) -> list[ResidualPool]:
        from ..engine import ResidualPool

        residuals = Y - cache.model.project(Y)
        return [ResidualPool(reduced.project(Y), residuals) for reduced in cache.reduced]
