"""End-to-end benchmark — full lm_rrpp() → anova() → manova_update() pipeline.

Measures wall time for the complete analysis (decomposition → observed
fits → permutation schedule → batched projections → statistics) across
synthetic scenarios with varying observation counts (n), response
dimensions (p), term counts, randomization strategies and executors.

Key questions this benchmark answers
-------------------------------------
1. How does runtime scale with the response dimension *p* once the
   projector cache is built?
2. Does the choice of residual pool (rrpp / frpp / ter_braak) change
   the cost, given that every pool shares the same projections?
3. When do thread pools pay off over the sequential executor?
4. How much does the SSCP pass add on top of the univariate-style
   SS computation?

Usage::

    python benchmarks/profile_endtoend.py          # full suite
    python benchmarks/profile_endtoend.py --quick  # reduced

Outputs:
    benchmarks/results/endtoend_profile.csv
    benchmarks/image/endtoend-profile/time_by_p.png
    benchmarks/image/endtoend-profile/executor_speedup.png
"""

from __future__ import annotations

import argparse
import platform
import sys
import time
import warnings
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

# Ensure the package is importable when running from the repo root.
sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
from rrpp import anova, lm_rrpp, manova_update, use_backend  # noqa: E402
from rrpp.design import DesignMatrix  # noqa: E402

# ====================================================================== #
#  Scenario definitions                                                   #
# ====================================================================== #
#
# Each scenario is a dict with:
#   name:          Human-readable label
#   n:             Number of observations
#   p:             Number of response variables
#   groups:        Levels of the categorical term
#   covariates:    Number of continuous covariate terms
#   randomization: Residual pool strategy
#   ss_type:       Sums-of-squares type
#   executors:     Executor names to test

SCENARIOS: list[dict] = [
    # ---- Varying p at small n ----------------------------------------
    {"name": "n50_p2", "n": 50, "p": 2, "groups": 3, "covariates": 1,
     "randomization": "rrpp", "ss_type": "I", "executors": ["sequential", "threads"]},
    {"name": "n50_p20", "n": 50, "p": 20, "groups": 3, "covariates": 1,
     "randomization": "rrpp", "ss_type": "I", "executors": ["sequential", "threads"]},
    {"name": "n50_p100", "n": 50, "p": 100, "groups": 3, "covariates": 1,
     "randomization": "rrpp", "ss_type": "I", "executors": ["sequential", "threads"]},
    # ---- Varying p at medium n ---------------------------------------
    {"name": "n200_p2", "n": 200, "p": 2, "groups": 4, "covariates": 2,
     "randomization": "rrpp", "ss_type": "I", "executors": ["sequential", "threads"]},
    {"name": "n200_p20", "n": 200, "p": 20, "groups": 4, "covariates": 2,
     "randomization": "rrpp", "ss_type": "I", "executors": ["sequential", "threads"]},
    {"name": "n200_p100", "n": 200, "p": 100, "groups": 4, "covariates": 2,
     "randomization": "rrpp", "ss_type": "I", "executors": ["sequential", "threads"]},
    # ---- Residual pools at matched size ------------------------------
    {"name": "n200_p20_frpp", "n": 200, "p": 20, "groups": 4, "covariates": 2,
     "randomization": "frpp", "ss_type": "I", "executors": ["sequential"]},
    {"name": "n200_p20_terbraak", "n": 200, "p": 20, "groups": 4, "covariates": 2,
     "randomization": "ter_braak", "ss_type": "III", "executors": ["sequential"]},
    {"name": "n200_p20_type3", "n": 200, "p": 20, "groups": 4, "covariates": 2,
     "randomization": "rrpp", "ss_type": "III", "executors": ["sequential"]},
    # ---- Large n -----------------------------------------------------
    {"name": "n1000_p20", "n": 1000, "p": 20, "groups": 5, "covariates": 3,
     "randomization": "rrpp", "ss_type": "I", "executors": ["sequential", "threads"]},
]

# Quick-mode keeps a representative subset
QUICK_NAMES = {"n50_p2", "n50_p100", "n200_p20", "n200_p20_terbraak"}

# ---- Shared constants ------------------------------------------------

ITERATIONS = 999
RANDOM_STATE = 42
REPEATS = 3


# ====================================================================== #
#  Data generation                                                        #
# ====================================================================== #


def _generate_data(
    scenario: dict,
    rng: np.random.Generator,
) -> tuple[np.ndarray, DesignMatrix]:
    """Generate a response matrix and a factor + covariate design."""
    n = scenario["n"]
    p = scenario["p"]
    G = scenario["groups"]

    group = np.repeat(np.arange(G), int(np.ceil(n / G)))[:n]
    dummies = (group[:, None] == np.arange(1, G)[None, :]).astype(float)
    blocks: dict = {"group": pd.DataFrame(dummies, columns=[f"group{g}" for g in range(1, G)])}
    covariates = rng.standard_normal((n, scenario["covariates"]))
    for j in range(covariates.shape[1]):
        blocks[f"x{j + 1}"] = covariates[:, j]

    design = DesignMatrix.from_blocks(blocks)
    effects = rng.standard_normal((design.n_columns, p)) * 0.5
    Y = design.values @ effects + rng.standard_normal((n, p))
    return Y, design


# ====================================================================== #
#  Single-run executor                                                    #
# ====================================================================== #


def _run_single(scenario: dict, executor: str, Y: np.ndarray, design: DesignMatrix) -> dict:
    """Run one analysis and return its stage timings."""
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        t0 = time.perf_counter()
        lm = lm_rrpp(
            Y,
            design,
            iterations=ITERATIONS,
            ss_type=scenario["ss_type"],
            randomization=scenario["randomization"],
            seed=RANDOM_STATE,
            executor=executor,
            compute_coefficients=False,
        )
        t1 = time.perf_counter()
        anova(lm)
        t2 = time.perf_counter()
        if scenario["p"] > 1:
            manova_update(lm, executor=executor)
        t3 = time.perf_counter()

    return {
        "fit_s": t1 - t0,
        "anova_s": t2 - t1,
        "manova_s": t3 - t2,
        "backend": lm.context.backend,
    }


# ====================================================================== #
#  Benchmark runner                                                       #
# ====================================================================== #


def run_benchmark(scenarios: list[dict]) -> pd.DataFrame:
    """Run all scenario × executor combinations and return results."""
    rng = np.random.default_rng(RANDOM_STATE)
    total = sum(len(s["executors"]) * REPEATS for s in scenarios)

    print("=" * 72)
    print("END-TO-END RRPP BENCHMARK")
    print("=" * 72)
    print(f"Python:     {sys.version}")
    print(f"Platform:   {platform.platform()}")
    print(f"Iterations: {ITERATIONS}")
    print(f"Repeats:    {REPEATS}")
    print(f"Scenarios:  {len(scenarios)}")
    print()

    print("Running benchmarks...")
    print("-" * 72)

    rows: list[dict] = []
    run_idx = 0
    for s in scenarios:
        # Same data for every executor of a scenario
        Y, design = _generate_data(s, rng)
        for executor in s["executors"]:
            timings = []
            for _rep in range(REPEATS):
                timings.append(_run_single(s, executor, Y, design))
                run_idx += 1

            fit_s = float(np.median([t["fit_s"] for t in timings]))
            manova_s = float(np.median([t["manova_s"] for t in timings]))
            rows.append(
                {
                    "scenario": s["name"],
                    "n": s["n"],
                    "p": s["p"],
                    "randomization": s["randomization"],
                    "ss_type": s["ss_type"],
                    "executor": executor,
                    "backend": timings[0]["backend"],
                    "fit_s": fit_s,
                    "anova_s": float(np.median([t["anova_s"] for t in timings])),
                    "manova_s": manova_s,
                }
            )
            print(
                f"  [{run_idx:>4}/{total}] {s['name']:<22} {executor:<11} "
                f"fit={fit_s:>8.4f}s  manova={manova_s:>8.4f}s"
            )

    print("-" * 72)
    print(f"Total scenario runs: {len(rows)}")
    print()
    return pd.DataFrame(rows)


# ====================================================================== #
#  Chart generation                                                       #
# ====================================================================== #

_CHART_DIR = Path(__file__).resolve().parent / "image" / "endtoend-profile"


def _chart_time_by_p(df: pd.DataFrame) -> None:
    """Fit and SSCP time vs. response dimension, sequential rrpp runs."""
    sub = df[(df["executor"] == "sequential") & (df["randomization"] == "rrpp")
             & (df["ss_type"] == "I")]
    if sub.empty:
        return
    _CHART_DIR.mkdir(parents=True, exist_ok=True)

    fig, ax = plt.subplots(figsize=(10, 6))
    for n_val in sorted(sub["n"].unique()):
        ns = sub[sub["n"] == n_val].sort_values("p")
        ax.plot(ns["p"], ns["fit_s"], "o-", label=f"lm_rrpp, n={n_val}")
        ax.plot(ns["p"], ns["manova_s"], "s--", label=f"manova_update, n={n_val}")
    ax.set_xlabel("Response variables (p)")
    ax.set_ylabel("Wall time (s)")
    ax.set_title("Wall Time vs. Response Dimension")
    ax.legend()
    ax.grid(True, alpha=0.3)

    fig.tight_layout()
    path = _CHART_DIR / "time_by_p.png"
    fig.savefig(path, dpi=150, bbox_inches="tight")
    plt.close(fig)
    print(f"  Saved {path}")


def _chart_executor_speedup(df: pd.DataFrame) -> None:
    """Sequential / threads time ratio per scenario."""
    seq = df[df["executor"] == "sequential"].set_index("scenario")["fit_s"]
    thr = df[df["executor"] == "threads"].set_index("scenario")["fit_s"]
    ratio = (seq / thr).dropna()
    if ratio.empty:
        return
    _CHART_DIR.mkdir(parents=True, exist_ok=True)

    fig, ax = plt.subplots(figsize=(10, 6))
    ax.bar(range(len(ratio)), ratio.to_numpy())
    ax.set_xticks(range(len(ratio)))
    ax.set_xticklabels(ratio.index, rotation=45, ha="right")
    ax.axhline(y=1.0, color="gray", linestyle="--", alpha=0.5)
    ax.set_ylabel("Speed-up (sequential / threads)")
    ax.set_title("Thread Pool Speed-up for lm_rrpp")
    ax.grid(True, alpha=0.3, axis="y")

    fig.tight_layout()
    path = _CHART_DIR / "executor_speedup.png"
    fig.savefig(path, dpi=150, bbox_inches="tight")
    plt.close(fig)
    print(f"  Saved {path}")


# ====================================================================== #
#  Main                                                                   #
# ====================================================================== #


def main() -> None:
    parser = argparse.ArgumentParser(description="End-to-end RRPP benchmark")
    parser.add_argument(
        "--quick",
        action="store_true",
        help="Run a reduced scenario set for faster iteration",
    )
    parser.add_argument(
        "--backend",
        default="auto",
        choices=["auto", "numpy", "jax"],
        help="Projection kernels to benchmark",
    )
    args = parser.parse_args()

    scenarios = [s for s in SCENARIOS if s["name"] in QUICK_NAMES] if args.quick else SCENARIOS
    with use_backend(args.backend):
        df = run_benchmark(scenarios)

    results_dir = Path(__file__).resolve().parent / "results"
    results_dir.mkdir(parents=True, exist_ok=True)
    csv_path = results_dir / "endtoend_profile.csv"
    df.to_csv(csv_path, index=False)
    print(f"\nSaved results to {csv_path}")

    print("Generating charts...")
    _chart_time_by_p(df)
    _chart_executor_speedup(df)


if __name__ == "__main__":
    main()
