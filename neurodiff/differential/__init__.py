"""
Differential expression module for neurodiff

Negative binomial GLM testing with shrunken dispersions, Benjamini-Hochberg
correction and threshold-based gene list extraction.
"""

from .analyzer import (DifferentialExpressionEngine,
                       DifferentialExpressionResult, DifferentialSummary,
                       benjamini_hochberg, rank_results)
from .dispersion import (DispersionEstimates, DispersionTrend,
                         GenewiseDispersions, estimate_dispersions,
                         estimate_genewise_dispersions, estimate_size_factors,
                         fit_dispersion_trend, shrink_dispersions)
from .gene_lists import (DEFAULT_THRESHOLDS, GeneList, ThresholdConfig,
                         extract_gene_list)
from .glm import GeneFit, fit_gene

__all__ = [
    "DifferentialExpressionEngine",
    "DifferentialExpressionResult",
    "DifferentialSummary",
    "benjamini_hochberg",
    "rank_results",
    "DispersionEstimates",
    "DispersionTrend",
    "GenewiseDispersions",
    "estimate_dispersions",
    "estimate_genewise_dispersions",
    "estimate_size_factors",
    "fit_dispersion_trend",
    "shrink_dispersions",
    "DEFAULT_THRESHOLDS",
    "GeneList",
    "ThresholdConfig",
    "extract_gene_list",
    "GeneFit",
    "fit_gene",
]
