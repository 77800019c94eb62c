"""
High-variance gene selection on normalized expression
"""

from typing import List

import numpy as np
import pandas as pd

from ..exceptions import InputValidationError
from ..normalization import NormalizedMatrix
from ..utils import get_logger

logger = get_logger(__name__)


class HighVarianceGeneSelector:
    """Select the K genes with the largest sample variance"""

    def __init__(self, n_genes: int = 500):
        if n_genes <= 0:
            raise InputValidationError("n_genes must be positive", field="n_hvg")
        self.n_genes = n_genes

    def gene_variances(self, matrix: NormalizedMatrix) -> pd.Series:
        return matrix.values.var(axis=1, ddof=1)

    def select(self, matrix: NormalizedMatrix) -> List[str]:
        """
        Args:
            matrix: Normalized expression

        Returns:
            Gene ids ordered by decreasing variance; ties keep matrix order
        """
        variances = self.gene_variances(matrix).to_numpy()
        k = min(self.n_genes, len(variances))

        order = np.argsort(-variances, kind="stable")[:k]
        selected = [matrix.values.index[i] for i in order]

        logger.info(f"Selected {len(selected)} high-variance genes of {len(variances)}")
        return selected
