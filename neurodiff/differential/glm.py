"""
Per-gene negative binomial GLM fit and Wald test
"""

import warnings
from dataclasses import dataclass
from typing import Optional

import numpy as np
import statsmodels.api as sm
from scipy.stats import norm
from statsmodels.tools.sm_exceptions import (ConvergenceWarning,
                                             PerfectSeparationError)

LN2 = np.log(2.0)


@dataclass(frozen=True)
class GeneFit:
    """Wald test outcome for a single gene (log2 scale)"""

    log2_fold_change: float = np.nan
    lfc_se: float = np.nan
    stat: float = np.nan
    pvalue: float = np.nan
    converged: bool = False
    tested: bool = False
    untested_reason: Optional[str] = None

    @classmethod
    def untested(cls, reason: str, converged: bool = False) -> "GeneFit":
        return cls(converged=converged, tested=False, untested_reason=reason)


def wald_test(beta: float, se: float) -> tuple:
    """Two-sided Wald test on the natural-log scale coefficient"""
    stat = beta / se
    return stat, float(2.0 * norm.sf(abs(stat)))


def fit_gene(
    y: np.ndarray,
    design_matrix: np.ndarray,
    offset: np.ndarray,
    dispersion: float,
    coefficient: int,
    max_iter: int = 100,
) -> GeneFit:
    """
    Fit one gene at a fixed dispersion and test one coefficient

    Failures are returned as untested fits so the caller can keep going.

    Args:
        y: Counts for one gene across samples
        design_matrix: samples x coefficients model matrix
        offset: log size factors
        dispersion: Final dispersion for this gene
        coefficient: Column index of the tested coefficient
        max_iter: IRLS iteration limit

    Returns:
        GeneFit
    """
    if not np.isfinite(dispersion) or dispersion <= 0:
        return GeneFit.untested("invalid dispersion")

    model = sm.GLM(
        y,
        design_matrix,
        family=sm.families.NegativeBinomial(alpha=float(dispersion)),
        offset=offset,
    )

    try:
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            results = model.fit(maxiter=max_iter)
    except (PerfectSeparationError, np.linalg.LinAlgError, ValueError) as e:
        return GeneFit.untested(f"fit failed: {e}")

    converged = bool(getattr(results, "converged", True)) and not any(
        issubclass(w.category, ConvergenceWarning) for w in caught
    )

    beta = float(np.asarray(results.params)[coefficient])
    se = float(np.asarray(results.bse)[coefficient])

    if not np.isfinite(beta) or not np.isfinite(se) or se <= 0:
        return GeneFit.untested("non-finite coefficient or standard error", converged)

    stat, pvalue = wald_test(beta, se)
    if not np.isfinite(pvalue):
        return GeneFit.untested("non-finite p-value", converged)

    return GeneFit(
        log2_fold_change=beta / LN2,
        lfc_se=se / LN2,
        stat=stat,
        pvalue=pvalue,
        converged=converged,
        tested=True,
    )
