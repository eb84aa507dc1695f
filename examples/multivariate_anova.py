"""
Test Case 1: Multivariate Linear Model (Continuous Multivariate Outcome)
Synthetic morphometric data: three populations measured on eight traits
with body size as a covariate.

Demonstrates:
- ``lm_rrpp`` with a mapping design (factor + covariate + interaction)
- Type I / II / III sums of squares and all three residual pools
- ``anova`` with F, SS and Cohen's f effect types
- ``compare_models`` against a reference (null) model
- ``manova_update`` / ``summary_manova`` for multivariate test statistics
- ``coef_test`` / ``beta_test`` on coefficient vectors
- ``model_diagnostics`` likelihood summaries
"""

import numpy as np
import pandas as pd

from rrpp import (
    anova,
    beta_test,
    coef_test,
    compare_effect_sizes,
    compare_models,
    lm_rrpp,
    manova_update,
    model_diagnostics,
    summary_manova,
)

# ============================================================================
# Simulate data
# ============================================================================

rng = np.random.default_rng(42)
n_per_group, n_traits = 20, 8
population = np.repeat(["north", "central", "south"], n_per_group)
n = population.size

size = rng.normal(10.0, 2.0, size=n)
pop_dummies = pd.get_dummies(population, drop_first=True, dtype=float)
pop_dummies.columns = [f"population[{c}]" for c in pop_dummies.columns]

allometry = rng.normal(0.3, 0.05, size=n_traits)
shift = np.zeros((n, n_traits))
shift[population == "south", :3] += 1.5
Y = pd.DataFrame(
    size[:, None] * allometry + shift + rng.standard_normal((n, n_traits)),
    columns=[f"trait{i + 1}" for i in range(n_traits)],
)

interaction = pop_dummies.mul(size, axis=0)
interaction.columns = [f"size:{c}" for c in pop_dummies.columns]
design = {
    "size": pd.Series(size, name="size"),
    "population": pop_dummies,
    "size:population": interaction,
}

# ============================================================================
# Sequential (Type I) sums of squares with RRPP
# ============================================================================

fit = lm_rrpp(Y, design, iterations=999, seed=42)
print("Type I, RRPP")
print(anova(fit).table.round(4))

assert fit.terms == ["size", "population", "size:population"]
assert fit.context.n_permutations == 1000

# ============================================================================
# Marginal (Type III) sums of squares with the ter Braak residual pool
# ============================================================================

fit_iii = lm_rrpp(Y, design, iterations=999, ss_type="III", randomization="ter_braak", seed=42)
print("\nType III, ter Braak")
print(anova(fit_iii, effect_type="cohenf").table.round(4))

# ============================================================================
# Model comparison: covariate only vs. covariate + population
# ============================================================================

null = lm_rrpp(Y, {"size": design["size"]}, iterations=999, seed=42)
additive = lm_rrpp(
    Y, {"size": design["size"], "population": pop_dummies}, iterations=999, seed=42
)
comparison = compare_models(null, additive, fit, names=["additive", "interaction"])
print("\nModel comparison against size-only model")
print(comparison.table.round(4))

z, p = compare_effect_sizes(comparison)
print("\nPairwise effect-size differences (Z)")
print(z.round(3))

# ============================================================================
# Multivariate statistics from the SSCP matrices
# ============================================================================

manova = manova_update(fit)
for test in ("Pillai", "Wilks", "Hotelling-Lawley", "Roy"):
    print(f"\n{test}")
    print(summary_manova(manova, test=test).round(4))

# ============================================================================
# Coefficient tests
# ============================================================================

print("\nCoefficient vector lengths")
print(coef_test(fit).table.round(4))

print("\nPopulation coefficients against zero (with Mahalanobis distance)")
print(beta_test(additive, coef_no=["population[north]", "population[south]"],
                include_md=True).table.round(4))

# ============================================================================
# Diagnostics
# ============================================================================

diag = model_diagnostics(fit)
print(f"\nlogL = {diag['logL']:.3f} (rank {diag['rank']}, ridge={diag['ridge']})")
print(f"R²   = {diag['Rsq']:.3f}")
