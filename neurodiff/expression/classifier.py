"""
Expressed / background gene classification with a two-component Gaussian mixture
"""

from dataclasses import dataclass
from typing import Tuple

import numpy as np
import pandas as pd
from sklearn.mixture import GaussianMixture

from ..dataset import ExpressionDataset
from ..exceptions import InputValidationError, ModelFitError
from ..utils import get_logger

logger = get_logger(__name__)

N_COMPONENTS = 2


@dataclass(frozen=True)
class ExpressedGeneSet:
    """Genes classified as expressed, with the fitted mixture parameters"""

    gene_ids: Tuple[str, ...]
    all_gene_ids: Tuple[str, ...]
    component_means: Tuple[float, float]
    component_variances: Tuple[float, float]
    component_weights: Tuple[float, float]
    separation: float
    seed: int

    def __len__(self) -> int:
        return len(self.gene_ids)

    def __contains__(self, gene_id: object) -> bool:
        return gene_id in set(self.gene_ids)

    @property
    def membership(self) -> pd.Series:
        """Boolean membership for every classified gene, in input order"""
        expressed = set(self.gene_ids)
        return pd.Series(
            [gene in expressed for gene in self.all_gene_ids],
            index=list(self.all_gene_ids),
            name="expressed",
        )


def median_log_expression(counts: pd.DataFrame) -> pd.Series:
    """Per-gene median of log2(count + 1) across samples"""
    return np.log2(counts.astype(float) + 1).median(axis=1)


def ashman_d(means: np.ndarray, variances: np.ndarray) -> float:
    """Ashman's D separation between two Gaussian components"""
    return float(
        np.sqrt(2.0) * abs(means[0] - means[1]) / np.sqrt(variances[0] + variances[1])
    )


class ExpressedGeneClassifier:
    """
    Split genes into expressed and background noise

    A univariate two-component Gaussian mixture is fitted to the per-gene
    median log2 expression; genes assigned to the component with the higher
    mean are expressed. The fit is a gate for the whole run, so a degenerate
    or poorly separated mixture raises ModelFitError instead of defaulting.
    """

    def __init__(
        self,
        seed: int,
        n_components: int = N_COMPONENTS,
        min_component_fraction: float = 0.01,
        min_separation: float = 2.0,
        max_iter: int = 500,
    ):
        if n_components != N_COMPONENTS:
            raise InputValidationError(
                f"Mixture model order must be exactly {N_COMPONENTS}, got {n_components}",
                field="n_components",
            )
        self.seed = int(seed)
        self.min_component_fraction = min_component_fraction
        self.min_separation = min_separation
        self.max_iter = max_iter

    def classify(self, counts: pd.DataFrame) -> ExpressedGeneSet:
        """
        Classify genes of a genes x samples count matrix

        Args:
            counts: Non-negative integer counts, genes x samples

        Returns:
            ExpressedGeneSet
        """
        medians = median_log_expression(counts)
        values = medians.to_numpy()

        if len(values) < 2 * N_COMPONENTS:
            raise ModelFitError(
                f"Expressed gene classification needs at least {2 * N_COMPONENTS} "
                f"genes, got {len(values)}"
            )
        if len(np.unique(values)) < N_COMPONENTS or np.var(values) == 0:
            raise ModelFitError(
                "Median log-expression is constant across genes; "
                "cannot fit a two-component mixture"
            )

        logger.info(
            f"Fitting {N_COMPONENTS}-component Gaussian mixture to "
            f"{len(values)} gene medians (seed={self.seed})"
        )

        model = GaussianMixture(
            n_components=N_COMPONENTS,
            covariance_type="full",
            max_iter=self.max_iter,
            random_state=self.seed,
        )
        labels = model.fit_predict(values.reshape(-1, 1))

        means = model.means_.ravel()
        variances = model.covariances_.ravel()
        weights = model.weights_.ravel()

        self._check_fit(model, means, variances, weights)

        expressed_component = int(np.argmax(means))
        separation = ashman_d(means, variances)
        expressed = medians.index[labels == expressed_component]

        order = [expressed_component, 1 - expressed_component]
        logger.info(
            f"Mixture fit: expressed mean={means[order[0]]:.2f}, "
            f"background mean={means[order[1]]:.2f}, D={separation:.2f}; "
            f"{len(expressed)}/{len(values)} genes expressed"
        )

        return ExpressedGeneSet(
            gene_ids=tuple(expressed),
            all_gene_ids=tuple(medians.index),
            component_means=tuple(float(means[i]) for i in order),
            component_variances=tuple(float(variances[i]) for i in order),
            component_weights=tuple(float(weights[i]) for i in order),
            separation=separation,
            seed=self.seed,
        )

    def classify_dataset(self, dataset: ExpressionDataset) -> ExpressedGeneSet:
        return self.classify(dataset.counts)

    def filter_dataset(
        self, dataset: ExpressionDataset
    ) -> Tuple[ExpressionDataset, ExpressedGeneSet]:
        """Classify and return a new dataset restricted to expressed genes"""
        expressed = self.classify_dataset(dataset)
        return dataset.subset_genes(expressed.gene_ids), expressed

    def _check_fit(
        self,
        model: GaussianMixture,
        means: np.ndarray,
        variances: np.ndarray,
        weights: np.ndarray,
    ) -> None:
        if not model.converged_:
            raise ModelFitError(
                f"Gaussian mixture did not converge within {self.max_iter} iterations"
            )

        if weights.min() < self.min_component_fraction:
            raise ModelFitError(
                f"Mixture component is nearly empty (weight {weights.min():.4f} < "
                f"{self.min_component_fraction})"
            )

        separation = ashman_d(means, variances)
        if separation < self.min_separation:
            raise ModelFitError(
                f"Mixture components are not well separated (Ashman's D "
                f"{separation:.2f} < {self.min_separation})"
            )
