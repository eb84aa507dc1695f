"""Exception and warning taxonomy.

Structural problems (:class:`DesignError`, :class:`RankDeficiencyError`)
are raised before any permutation work starts.  Numerical trouble inside
the permutation loop is recovered per permutation and reported through
the warning categories below, never through silent NaNs.
"""

from __future__ import annotations

import numpy as np


class RRPPError(Exception):
    """Base class for all rrpp errors."""


class DesignError(RRPPError, ValueError):
    """Malformed, inconsistent, or non-nested design input."""


class RankDeficiencyError(RRPPError, ValueError):
    """A design with columns has realised rank zero."""


class SingularCovarianceError(RRPPError, np.linalg.LinAlgError):
    """A covariance or SSCP matrix could not be inverted under the policy."""


class DegenerateTermWarning(UserWarning):
    """A term adds no columns to its reduced model; its SS is identically 0."""


class RankTruncationWarning(UserWarning):
    """Linearly dependent design columns were dropped."""


class SingularCovarianceWarning(UserWarning):
    """A singular matrix was inverted through a fallback (pinv or shrinkage)."""


__all__ = [
    "RRPPError",
    "DesignError",
    "RankDeficiencyError",
    "SingularCovarianceError",
    "DegenerateTermWarning",
    "RankTruncationWarning",
    "SingularCovarianceWarning",
]
