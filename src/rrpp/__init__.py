"""rrpp — Linear models evaluated by randomized residual permutation.

Fits univariate or multivariate linear models by OLS, WLS or GLS and
evaluates every term by permuting residuals of term-specific reduced
models (RRPP).  Sums of squares under types I, II and III are computed
by projection for thousands of pseudo-responses without refitting;
ANOVA tables, multi-model comparisons, SSCP/MANOVA statistics and
coefficient tests are assembled from the resulting distributions.

Public API:
    .. autosummary::
        lm_rrpp
        anova
        anova_parts
        compare_models
        compare_effect_sizes
        manova_update
        multivariate_statistics
        summary_manova
        coef_test
        beta_test
        log_likelihood
        model_diagnostics
        classical_anova
        DesignMatrix
        SSType
        decompose
        fit
        scale_cov
        CovarianceTransform
        schedule
        PermutationSchedule
        RRPPEngine
        permutation_p_values
        effect_sizes
        get_backend
        set_backend
        use_backend
        FitContext
        LmRRPP
        PermutationResult
        AnovaResult
        ModelComparisonResult
        ManovaResult
        CoefficientTestResult
        BetaTestResult
"""

from ._config import get_backend, set_backend, use_backend
from ._context import FitContext
from ._results import (
    AnovaResult,
    BetaTestResult,
    CoefficientTestResult,
    LmRRPP,
    ManovaResult,
    ModelComparisonResult,
    PermutationResult,
)
from .anova import anova, anova_parts, compare_effect_sizes, compare_models
from .coefficients import beta_test, coef_test
from .core import lm_rrpp
from .design import DesignMatrix, SSType, decompose
from .diagnostics import classical_anova, log_likelihood, model_diagnostics
from .engine import RRPPEngine
from .exceptions import (
    DegenerateTermWarning,
    DesignError,
    RankDeficiencyError,
    RankTruncationWarning,
    RRPPError,
    SingularCovarianceError,
    SingularCovarianceWarning,
)
from .fitting import CovarianceTransform, fit, scale_cov
from .permutations import PermutationSchedule, schedule
from .pvalues import effect_sizes, permutation_p_values
from .sscp import manova_update, multivariate_statistics, summary_manova

__all__ = [
    "lm_rrpp",
    "anova",
    "anova_parts",
    "compare_models",
    "compare_effect_sizes",
    "manova_update",
    "multivariate_statistics",
    "summary_manova",
    "coef_test",
    "beta_test",
    "log_likelihood",
    "model_diagnostics",
    "classical_anova",
    "DesignMatrix",
    "SSType",
    "decompose",
    "fit",
    "scale_cov",
    "CovarianceTransform",
    "schedule",
    "PermutationSchedule",
    "RRPPEngine",
    "permutation_p_values",
    "effect_sizes",
    "get_backend",
    "set_backend",
    "use_backend",
    "FitContext",
    "LmRRPP",
    "PermutationResult",
    "AnovaResult",
    "ModelComparisonResult",
    "ManovaResult",
    "CoefficientTestResult",
    "BetaTestResult",
    "RRPPError",
    "DesignError",
    "RankDeficiencyError",
    "SingularCovarianceError",
    "DegenerateTermWarning",
    "RankTruncationWarning",
    "SingularCovarianceWarning",
]

__version__ = "0.1.0"
