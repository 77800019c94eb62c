"""
Quality control diagnostics: high-variance genes and PCA
"""

from .hvg import HighVarianceGeneSelector
from .pca import (PCAProjector, PCAResult, correlation_ratio,
                  filter_confounded)

__all__ = [
    "HighVarianceGeneSelector",
    "PCAProjector",
    "PCAResult",
    "correlation_ratio",
    "filter_confounded",
]
