"""
Design-aware variance-stabilizing transformation of RNA-seq counts
"""

from dataclasses import dataclass

import numpy as np
import pandas as pd

from ..dataset import Design, ExpressionDataset
from ..differential.dispersion import (DispersionTrend,
                                       estimate_genewise_dispersions,
                                       estimate_size_factors, normalize_counts)
from ..exceptions import InputValidationError
from ..utils import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class NormalizedMatrix:
    """
    Variance-stabilized expression (genes x samples, log2 scale)

    Values depend on the Design used to estimate dispersions; matrices built
    with different Designs are not comparable.
    """

    values: pd.DataFrame
    design: Design
    size_factors: pd.Series
    trend: DispersionTrend

    @property
    def n_genes(self) -> int:
        return self.values.shape[0]

    @property
    def n_samples(self) -> int:
        return self.values.shape[1]


def vst_transform(normalized: np.ndarray, trend: DispersionTrend) -> np.ndarray:
    """
    Closed-form variance-stabilizing transform for a mean-dispersion trend

    Args:
        normalized: Size-factor normalized counts
        trend: Fitted dispersion trend

    Returns:
        Transformed values on the log2 scale
    """
    q = np.asarray(normalized, dtype=float)

    if trend.fit_type == "parametric":
        a0 = trend.asymptotic
        a1 = trend.extra_poisson
        return np.log(
            (1 + a1 + 2 * a0 * q + 2 * np.sqrt(a0 * q * (1 + a1 + a0 * q))) / (4 * a0)
        ) / np.log(2)

    alpha = trend.asymptotic
    return (2 * np.arcsinh(np.sqrt(alpha * q)) - np.log(alpha) - np.log(4)) / np.log(2)


class Normalizer:
    """Size factors, design-aware dispersion trend and VST in one step"""

    def __init__(self, min_dispersion: float = 1e-8, n_jobs: int = 1):
        self.min_dispersion = min_dispersion
        self.n_jobs = n_jobs

    def transform(self, dataset: ExpressionDataset, design: Design) -> NormalizedMatrix:
        """
        Normalize ``dataset`` counts under ``design``

        Args:
            dataset: Raw counts, typically restricted to expressed genes
            design: Design whose model matrix is used for dispersion estimation

        Returns:
            NormalizedMatrix
        """
        if dataset.n_samples < 2:
            raise InputValidationError(
                f"Normalization needs at least 2 samples, got {dataset.n_samples}",
                field="samples",
            )

        design.validate(dataset.samples)
        design_matrix = design.model_matrix(dataset.samples).to_numpy(dtype=float)

        counts = dataset.counts.to_numpy(dtype=float)
        size_factors = estimate_size_factors(counts)
        nonzero = counts.sum(axis=1) > 0

        genewise = estimate_genewise_dispersions(
            counts[nonzero],
            design_matrix,
            size_factors,
            min_disp=self.min_dispersion,
            n_jobs=self.n_jobs,
        )

        values = vst_transform(normalize_counts(counts, size_factors), genewise.trend)

        logger.info(
            f"Variance-stabilized {dataset.n_genes} genes x {dataset.n_samples} samples "
            f"({genewise.trend.fit_type} dispersion trend)"
        )

        return NormalizedMatrix(
            values=pd.DataFrame(values, index=dataset.counts.index, columns=dataset.counts.columns),
            design=design,
            size_factors=pd.Series(size_factors, index=dataset.counts.columns, name="size_factor"),
            trend=genewise.trend,
        )
