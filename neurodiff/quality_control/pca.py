"""
PCA diagnostics and covariate eigen-correlation
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd
from pandas.api.types import is_numeric_dtype
from scipy.stats import f_oneway, pearsonr
from sklearn.decomposition import PCA

from ..exceptions import InputValidationError
from ..normalization import NormalizedMatrix
from ..utils import get_logger

logger = get_logger(__name__)

CORRELATION_COLUMNS = ["component", "covariate", "kind", "correlation", "pvalue"]


def correlation_ratio(categories: pd.Series, values: np.ndarray) -> float:
    """Correlation ratio (eta) of ``values`` grouped by ``categories``"""
    values = np.asarray(values, dtype=float)
    total = np.sum((values - values.mean()) ** 2)
    if total == 0:
        return 0.0

    between = 0.0
    for level in pd.unique(categories):
        group = values[(categories == level).to_numpy()]
        between += len(group) * (group.mean() - values.mean()) ** 2
    return float(np.sqrt(between / total))


def filter_confounded(
    correlations: pd.DataFrame, threshold: float = 0.7, alpha: float = 0.05
) -> pd.DataFrame:
    """Rows with |correlation| >= threshold and p < alpha"""
    mask = (correlations["correlation"].abs() >= threshold) & (correlations["pvalue"] < alpha)
    return correlations[mask].reset_index(drop=True)


@dataclass(frozen=True)
class PCAResult:
    """Per-sample coordinates, explained variance and gene loadings"""

    coordinates: pd.DataFrame
    explained_variance_ratio: pd.Series
    loadings: pd.DataFrame
    genes: List[str]

    @property
    def components(self) -> List[str]:
        return list(self.coordinates.columns)

    def correlate_covariates(
        self,
        samples: pd.DataFrame,
        covariates: Optional[Sequence[str]] = None,
    ) -> pd.DataFrame:
        """
        Correlate every principal component with sample covariates

        Numeric covariates use Pearson's r; categorical covariates use the
        correlation ratio (eta) with a one-way ANOVA p-value. Constant
        columns, and categorical columns with a distinct value per sample,
        carry no information and are skipped.

        Args:
            samples: Sample metadata indexed like ``coordinates``
            covariates: Columns to test (default: all metadata columns)

        Returns:
            Long table with one row per (component, covariate)
        """
        samples = samples.loc[self.coordinates.index]
        covariates = list(samples.columns) if covariates is None else list(covariates)

        missing = [c for c in covariates if c not in samples.columns]
        if missing:
            raise InputValidationError(f"Unknown covariates: {missing}", field="covariates")

        rows = []
        for covariate in covariates:
            values = samples[covariate]
            if values.isna().any() or values.nunique() < 2:
                continue

            numeric = is_numeric_dtype(values) and not pd.api.types.is_bool_dtype(values)
            if not numeric and values.nunique() == len(values):
                continue

            for component in self.components:
                scores = self.coordinates[component].to_numpy()
                if numeric:
                    r, p = pearsonr(values.to_numpy(dtype=float), scores)
                    rows.append((component, covariate, "numeric", float(r), float(p)))
                else:
                    labels = values.astype(str)
                    groups = [scores[(labels == level).to_numpy()] for level in pd.unique(labels)]
                    _, p = f_oneway(*groups)
                    eta = correlation_ratio(labels, scores)
                    rows.append((component, covariate, "categorical", eta, float(p)))

        return pd.DataFrame(rows, columns=CORRELATION_COLUMNS)

    def confounded(
        self,
        samples: pd.DataFrame,
        threshold: float = 0.7,
        alpha: float = 0.05,
        covariates: Optional[Sequence[str]] = None,
    ) -> pd.DataFrame:
        """Component/covariate pairs with |correlation| >= threshold and p < alpha"""
        return filter_confounded(self.correlate_covariates(samples, covariates), threshold, alpha)


class PCAProjector:
    """Principal component analysis of samples in a gene subspace"""

    def __init__(self, n_components: int = 10):
        if n_components <= 0:
            raise InputValidationError("n_components must be positive", field="n_components")
        self.n_components = n_components

    def project(self, matrix: NormalizedMatrix, genes: Sequence[str]) -> PCAResult:
        """
        Args:
            matrix: Normalized expression
            genes: Gene ids spanning the projection space (e.g. HVGs)

        Returns:
            PCAResult
        """
        genes = list(genes)
        if not genes:
            raise InputValidationError("PCA needs at least one gene", field="genes")
        if matrix.n_samples < 2:
            raise InputValidationError("PCA needs at least 2 samples", field="samples")

        data = matrix.values.loc[genes].T
        n_components = min(self.n_components, matrix.n_samples - 1, len(genes))

        pca = PCA(n_components=n_components, svd_solver="full")
        scores = pca.fit_transform(data.to_numpy(dtype=float))

        names = [f"PC{i + 1}" for i in range(n_components)]
        explained = pd.Series(pca.explained_variance_ratio_, index=names, name="explained_variance_ratio")

        logger.info(
            f"PCA on {len(genes)} genes: "
            + ", ".join(f"{name} {ratio:.1%}" for name, ratio in explained.head(3).items())
        )

        return PCAResult(
            coordinates=pd.DataFrame(scores, index=data.index, columns=names),
            explained_variance_ratio=explained,
            loadings=pd.DataFrame(pca.components_.T, index=genes, columns=names),
            genes=genes,
        )
