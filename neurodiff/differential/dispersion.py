"""
Negative binomial dispersion estimation with empirical Bayes shrinkage

Estimation is split into two pure passes:

1. ``estimate_genewise_dispersions``: per-gene Cox-Reid adjusted maximum
   likelihood estimates and a global mean-dispersion trend.
2. ``shrink_dispersions``: per-gene maximum a posteriori estimates under a
   log-normal prior centred on the trend from pass 1.

Both passes take counts as a genes x samples array and a model matrix as a
samples x coefficients array. The variance model is
``Var(K) = mu + alpha * mu ** 2``.
"""

import warnings
from dataclasses import dataclass
from functools import partial
from typing import Optional

import numpy as np
import statsmodels.api as sm
from scipy.optimize import minimize_scalar
from scipy.special import gammaln, polygamma
from scipy.stats import median_abs_deviation, trim_mean
from statsmodels.tools.sm_exceptions import (ConvergenceWarning,
                                             DomainWarning)

from ..exceptions import InputValidationError
from ..utils import get_logger, run_parallel

logger = get_logger(__name__)

MIN_MU = 0.5
MIN_DISPERSION = 1e-8


def estimate_size_factors(counts: np.ndarray) -> np.ndarray:
    """
    Median-of-ratios size factors

    Args:
        counts: genes x samples count array

    Returns:
        One size factor per sample
    """
    counts = np.asarray(counts, dtype=float)
    usable = np.all(counts > 0, axis=1)

    if not usable.any():
        raise InputValidationError(
            "Every gene contains at least one zero count; "
            "median-of-ratios size factors cannot be estimated",
            field="counts",
        )

    log_counts = np.log(counts[usable])
    log_geo_means = log_counts.mean(axis=1, keepdims=True)
    return np.exp(np.median(log_counts - log_geo_means, axis=0))


def normalize_counts(counts: np.ndarray, size_factors: np.ndarray) -> np.ndarray:
    return np.asarray(counts, dtype=float) / size_factors[np.newaxis, :]


def residual_degrees_of_freedom(design_matrix: np.ndarray) -> int:
    n_samples, n_coefs = design_matrix.shape
    return n_samples - n_coefs


def linear_model_mu(
    counts: np.ndarray, design_matrix: np.ndarray, size_factors: np.ndarray
) -> np.ndarray:
    """Fitted means from a least-squares fit of normalized counts"""
    normalized = normalize_counts(counts, size_factors)
    hat = design_matrix @ np.linalg.pinv(design_matrix)
    fitted = normalized @ hat.T
    return np.maximum(fitted * size_factors[np.newaxis, :], MIN_MU)


def rough_dispersions(
    counts: np.ndarray,
    design_matrix: np.ndarray,
    size_factors: np.ndarray,
    min_disp: float = MIN_DISPERSION,
) -> np.ndarray:
    """Moments-style starting dispersions from linear model residuals"""
    normalized = normalize_counts(counts, size_factors)
    hat = design_matrix @ np.linalg.pinv(design_matrix)
    fitted = np.maximum(normalized @ hat.T, 1.0)
    df = residual_degrees_of_freedom(design_matrix)
    estimates = np.sum(((normalized - fitted) ** 2 - fitted) / fitted**2, axis=1) / df
    return np.maximum(estimates, min_disp)


def nb_log_likelihood(y: np.ndarray, mu: np.ndarray, alpha: float) -> float:
    """Negative binomial log-likelihood summed over samples"""
    size = 1.0 / alpha
    alpha_mu = alpha * mu
    return float(
        np.sum(
            gammaln(y + size)
            - gammaln(size)
            - gammaln(y + 1.0)
            - size * np.log1p(alpha_mu)
            + y * (np.log(alpha_mu) - np.log1p(alpha_mu))
        )
    )


def cox_reid_adjustment(design_matrix: np.ndarray, mu: np.ndarray, alpha: float) -> float:
    """Cox-Reid penalty: -1/2 log det(X' W X)"""
    weights = mu / (1.0 + alpha * mu)
    information = design_matrix.T @ (design_matrix * weights[:, np.newaxis])
    _, log_det = np.linalg.slogdet(information)
    return -0.5 * float(log_det)


def _adjusted_profile_likelihood(
    log_alpha: float, y: np.ndarray, mu: np.ndarray, design_matrix: np.ndarray
) -> float:
    alpha = np.exp(log_alpha)
    return nb_log_likelihood(y, mu, alpha) + cox_reid_adjustment(design_matrix, mu, alpha)


def genewise_dispersion(
    y: np.ndarray,
    mu: np.ndarray,
    design_matrix: np.ndarray,
    min_disp: float,
    max_disp: float,
) -> float:
    """Maximum Cox-Reid adjusted likelihood dispersion for one gene"""
    result = minimize_scalar(
        lambda log_alpha: -_adjusted_profile_likelihood(log_alpha, y, mu, design_matrix),
        bounds=(np.log(min_disp), np.log(max_disp)),
        method="bounded",
        options={"xatol": 1e-6},
    )
    return float(np.exp(result.x))


def map_dispersion(
    y: np.ndarray,
    mu: np.ndarray,
    design_matrix: np.ndarray,
    trend_value: float,
    prior_variance: float,
    min_disp: float,
    max_disp: float,
) -> float:
    """Maximum a posteriori dispersion under a log-normal prior centred on the trend"""
    log_trend = np.log(trend_value)

    def objective(log_alpha: float) -> float:
        log_prior = -((log_alpha - log_trend) ** 2) / (2.0 * prior_variance)
        return -(_adjusted_profile_likelihood(log_alpha, y, mu, design_matrix) + log_prior)

    result = minimize_scalar(
        objective,
        bounds=(np.log(min_disp), np.log(max_disp)),
        method="bounded",
        options={"xatol": 1e-6},
    )
    return float(np.exp(result.x))


@dataclass(frozen=True)
class DispersionTrend:
    """
    Mean-dispersion trend

    ``parametric``: alpha(mean) = asymptotic + extra_poisson / mean
    ``mean``: alpha(mean) = asymptotic
    """

    fit_type: str
    asymptotic: float
    extra_poisson: float = 0.0

    def __call__(self, base_mean: np.ndarray) -> np.ndarray:
        base_mean = np.asarray(base_mean, dtype=float)
        if self.fit_type == "mean":
            return np.full(base_mean.shape, self.asymptotic)
        with np.errstate(divide="ignore"):
            return self.asymptotic + self.extra_poisson / base_mean


def _mean_trend(genewise: np.ndarray, min_disp: float) -> DispersionTrend:
    use = np.isfinite(genewise) & (genewise > 10 * min_disp)
    if not use.any():
        use = np.isfinite(genewise)
    value = float(trim_mean(genewise[use], 0.001)) if use.any() else 10 * min_disp
    return DispersionTrend(fit_type="mean", asymptotic=max(value, min_disp))


def fit_dispersion_trend(
    base_mean: np.ndarray,
    genewise: np.ndarray,
    min_disp: float = MIN_DISPERSION,
    max_iter: int = 10,
) -> DispersionTrend:
    """
    Fit alpha = a0 + a1 / mean with a Gamma-family GLM (identity link)

    Genes whose estimate sits at the lower bound are excluded, and genes with
    extreme residual ratios are dropped between iterations. Falls back to a
    trimmed mean trend when the parametric fit fails or does not converge.
    """
    base_mean = np.asarray(base_mean, dtype=float)
    genewise = np.asarray(genewise, dtype=float)

    candidates = (
        np.isfinite(genewise) & (genewise >= 100 * min_disp) & (base_mean > 0)
    )
    if candidates.sum() < 3:
        logger.warning(
            "Too few genes above the dispersion floor for a parametric trend; "
            "using a mean trend"
        )
        return _mean_trend(genewise, min_disp)

    coefs = np.array([0.1, 1.0])
    use = candidates

    try:
        for _ in range(max_iter):
            exog = np.column_stack([np.ones(use.sum()), 1.0 / base_mean[use]])
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", DomainWarning)
                warnings.simplefilter("ignore", ConvergenceWarning)
                fit = sm.GLM(
                    genewise[use],
                    exog,
                    family=sm.families.Gamma(link=sm.families.links.Identity()),
                ).fit(start_params=coefs)
            new_coefs = np.asarray(fit.params)

            if not np.all(np.isfinite(new_coefs)) or np.any(new_coefs <= 0):
                raise ValueError(f"non-positive trend coefficients {new_coefs}")

            ratio = genewise / (new_coefs[0] + new_coefs[1] / base_mean)
            use = candidates & (ratio > 1e-4) & (ratio < 15)

            converged = np.sum(np.log(new_coefs / coefs) ** 2) < 1e-6
            coefs = new_coefs
            if converged:
                break
        else:
            raise ValueError(f"no convergence within {max_iter} iterations")

    except (ValueError, np.linalg.LinAlgError) as e:
        logger.warning(f"Parametric dispersion trend failed ({e}); using a mean trend")
        return _mean_trend(genewise, min_disp)

    logger.debug(f"Dispersion trend: {coefs[0]:.4g} + {coefs[1]:.4g} / mean")
    return DispersionTrend(
        fit_type="parametric",
        asymptotic=float(coefs[0]),
        extra_poisson=float(coefs[1]),
    )


@dataclass(frozen=True)
class GenewiseDispersions:
    """Pass 1 output: gene-wise estimates, fitted means and the global trend"""

    base_mean: np.ndarray
    mu: np.ndarray
    genewise: np.ndarray
    trend: DispersionTrend
    min_disp: float
    max_disp: float

    @property
    def trended(self) -> np.ndarray:
        return np.maximum(self.trend(self.base_mean), self.min_disp)


@dataclass(frozen=True)
class DispersionEstimates:
    """Pass 2 output: final dispersions with the intermediate estimates"""

    base_mean: np.ndarray
    mu: np.ndarray
    genewise: np.ndarray
    trended: np.ndarray
    map: np.ndarray
    final: np.ndarray
    outlier: np.ndarray
    trend: DispersionTrend
    prior_variance: float
    log_dispersion_variance: float


def _glm_mu(
    row: np.ndarray,
    design_matrix: np.ndarray,
    offset: np.ndarray,
    alpha: float,
) -> np.ndarray:
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        warnings.simplefilter("ignore", RuntimeWarning)
        fit = sm.GLM(
            row,
            design_matrix,
            family=sm.families.NegativeBinomial(alpha=alpha),
            offset=offset,
        ).fit()
    return np.maximum(np.asarray(fit.fittedvalues, dtype=float), MIN_MU)


def fitted_means(
    counts: np.ndarray,
    design_matrix: np.ndarray,
    size_factors: np.ndarray,
    min_disp: float = MIN_DISPERSION,
    n_jobs: int = 1,
) -> np.ndarray:
    """
    Initial per-gene fitted means

    Designs made only of group indicators use the closed form least-squares
    means; designs with continuous covariates fit a negative binomial GLM at a
    rough dispersion.
    """
    n_unique_rows = len(np.unique(design_matrix, axis=0))
    if n_unique_rows == design_matrix.shape[1]:
        return linear_model_mu(counts, design_matrix, size_factors)

    alphas = rough_dispersions(counts, design_matrix, size_factors, min_disp)
    offset = np.log(size_factors)
    rows = run_parallel(
        lambda item: _glm_mu(item[0], design_matrix, offset, max(item[1], 1e-4)),
        zip(counts, alphas),
        n_jobs=n_jobs,
    )
    return np.vstack(rows)


def _genewise_task(item, design_matrix, min_disp, max_disp):
    y, mu = item
    return genewise_dispersion(y, mu, design_matrix, min_disp, max_disp)


def estimate_genewise_dispersions(
    counts: np.ndarray,
    design_matrix: np.ndarray,
    size_factors: np.ndarray,
    min_disp: float = MIN_DISPERSION,
    n_jobs: int = 1,
) -> GenewiseDispersions:
    """
    Pass 1: gene-wise dispersion estimates and the mean-dispersion trend

    Args:
        counts: genes x samples counts; genes must not be all zero
        design_matrix: samples x coefficients model matrix
        size_factors: per-sample size factors
        min_disp: lower bound for dispersion estimates
        n_jobs: parallel workers for the per-gene fits

    Returns:
        GenewiseDispersions
    """
    counts = np.asarray(counts, dtype=float)
    design_matrix = np.asarray(design_matrix, dtype=float)
    n_samples = counts.shape[1]

    if residual_degrees_of_freedom(design_matrix) <= 0:
        raise InputValidationError(
            f"Design has {design_matrix.shape[1]} coefficients for {n_samples} "
            "samples; no residual degrees of freedom to estimate dispersion",
            field="design",
        )

    max_disp = max(10.0, float(n_samples))
    base_mean = normalize_counts(counts, size_factors).mean(axis=1)
    mu = fitted_means(counts, design_matrix, size_factors, min_disp, n_jobs)

    genewise = np.asarray(
        run_parallel(
            partial(
                _genewise_task,
                design_matrix=design_matrix,
                min_disp=min_disp,
                max_disp=max_disp,
            ),
            zip(counts, mu),
            n_jobs=n_jobs,
        ),
        dtype=float,
    )

    trend = fit_dispersion_trend(base_mean, genewise, min_disp)

    logger.info(
        f"Gene-wise dispersions estimated for {len(genewise)} genes "
        f"(median {np.median(genewise):.4g}, trend: {trend.fit_type})"
    )

    return GenewiseDispersions(
        base_mean=base_mean,
        mu=mu,
        genewise=genewise,
        trend=trend,
        min_disp=min_disp,
        max_disp=max_disp,
    )


def dispersion_prior_variance(
    genewise: np.ndarray,
    trended: np.ndarray,
    residual_df: int,
    min_disp: float = MIN_DISPERSION,
    floor: float = 0.25,
) -> tuple:
    """
    Variance of the log-normal dispersion prior

    Returns:
        (prior variance, observed variance of log residuals)
    """
    use = np.isfinite(genewise) & (genewise >= 100 * min_disp)
    if use.sum() < 2:
        return floor, floor

    residuals = np.log(genewise[use]) - np.log(trended[use])
    observed = float(median_abs_deviation(residuals, scale="normal") ** 2)
    expected = float(polygamma(1, residual_df / 2.0))
    return max(observed - expected, floor), observed


def _map_task(item, design_matrix, prior_variance, min_disp, max_disp):
    y, mu, trend_value = item
    return map_dispersion(
        y, mu, design_matrix, trend_value, prior_variance, min_disp, max_disp
    )


def shrink_dispersions(
    counts: np.ndarray,
    design_matrix: np.ndarray,
    genewise: GenewiseDispersions,
    outlier_sd: float = 2.0,
    prior_variance_floor: float = 0.25,
    n_jobs: int = 1,
) -> DispersionEstimates:
    """
    Pass 2: shrink gene-wise estimates towards the trend

    Genes whose gene-wise estimate lies more than ``outlier_sd`` standard
    deviations above the trend on the log scale keep the gene-wise estimate.
    """
    counts = np.asarray(counts, dtype=float)
    design_matrix = np.asarray(design_matrix, dtype=float)

    trended = genewise.trended
    prior_variance, observed_variance = dispersion_prior_variance(
        genewise.genewise,
        trended,
        residual_degrees_of_freedom(design_matrix),
        genewise.min_disp,
        prior_variance_floor,
    )

    map_estimates = np.asarray(
        run_parallel(
            partial(
                _map_task,
                design_matrix=design_matrix,
                prior_variance=prior_variance,
                min_disp=genewise.min_disp,
                max_disp=genewise.max_disp,
            ),
            zip(counts, genewise.mu, trended),
            n_jobs=n_jobs,
        ),
        dtype=float,
    )

    outlier = np.log(genewise.genewise) > np.log(trended) + outlier_sd * np.sqrt(
        observed_variance
    )
    final = np.where(outlier, genewise.genewise, map_estimates)

    logger.info(
        f"Dispersion shrinkage: prior variance {prior_variance:.3f}, "
        f"{int(outlier.sum())} dispersion outliers kept gene-wise"
    )

    return DispersionEstimates(
        base_mean=genewise.base_mean,
        mu=genewise.mu,
        genewise=genewise.genewise,
        trended=trended,
        map=map_estimates,
        final=final,
        outlier=outlier,
        trend=genewise.trend,
        prior_variance=prior_variance,
        log_dispersion_variance=observed_variance,
    )


def estimate_dispersions(
    counts: np.ndarray,
    design_matrix: np.ndarray,
    size_factors: np.ndarray,
    min_disp: float = MIN_DISPERSION,
    outlier_sd: float = 2.0,
    prior_variance_floor: float = 0.25,
    n_jobs: int = 1,
    genewise: Optional[GenewiseDispersions] = None,
) -> DispersionEstimates:
    """Run both passes and return the final dispersion estimates"""
    if genewise is None:
        genewise = estimate_genewise_dispersions(
            counts, design_matrix, size_factors, min_disp, n_jobs
        )
    return shrink_dispersions(
        counts,
        design_matrix,
        genewise,
        outlier_sd=outlier_sd,
        prior_variance_floor=prior_variance_floor,
        n_jobs=n_jobs,
    )
