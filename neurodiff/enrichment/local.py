"""
Local over-representation analysis against GMT gene set databases
"""

from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Union

import numpy as np
from scipy.stats import hypergeom
from statsmodels.stats.multitest import multipletests

from ..exceptions import EnrichmentServiceError
from ..utils import get_logger
from .gene_sets import GeneSetDatabase
from .models import EnrichmentBackend, TermHit

logger = get_logger(__name__)


def hypergeometric_pvalue(
    overlap: int, background_size: int, term_size: int, list_size: int
) -> float:
    """P(X >= overlap) for X ~ Hypergeometric(background, term, list)"""
    return float(hypergeom.sf(overlap - 1, background_size, term_size, list_size))


class LocalEnrichmentBackend(EnrichmentBackend):
    """
    One-sided hypergeometric test per term, BH-corrected per database

    The background of each database is the union of its annotated symbols;
    query genes outside the background are ignored. Only terms sharing at
    least one gene with the query are tested.
    """

    name = "local"

    def __init__(self, databases: Mapping[str, GeneSetDatabase]):
        self.databases = dict(databases)

    @classmethod
    def from_gmt_files(
        cls, gmt_files: Mapping[str, Union[str, Path]], versions: Optional[Mapping[str, str]] = None
    ) -> "LocalEnrichmentBackend":
        versions = versions or {}
        return cls(
            {
                name: GeneSetDatabase.from_gmt(path, name=name, version=versions.get(name))
                for name, path in gmt_files.items()
            }
        )

    def query(
        self, gene_symbols: Sequence[str], database_names: Sequence[str]
    ) -> Dict[str, List[TermHit]]:
        return {name: self._query_database(gene_symbols, name) for name in database_names}

    def _query_database(self, gene_symbols: Sequence[str], database_name: str) -> List[TermHit]:
        if database_name not in self.databases:
            raise EnrichmentServiceError("no gene set database loaded", database=database_name)

        database = self.databases[database_name]
        background = database.background
        query = set(gene_symbols) & background

        if not query:
            return []

        tested = []
        for term, genes in database.terms.items():
            overlap = genes & query
            if not overlap:
                continue
            pvalue = hypergeometric_pvalue(len(overlap), len(background), len(genes), len(query))
            tested.append((term, pvalue, tuple(sorted(overlap)), len(genes)))

        if not tested:
            return []

        pvalues = np.array([row[1] for row in tested])
        _, adjusted, _, _ = multipletests(pvalues, method="fdr_bh")

        logger.debug(
            f"{database_name}: {len(tested)} terms tested for {len(query)} genes "
            f"in a background of {len(background)}"
        )

        return [
            TermHit(
                term=term,
                adjusted_p_value=float(min(padj, 1.0)),
                overlap_count=len(overlap),
                overlap_genes=overlap,
                p_value=pvalue,
                term_size=term_size,
            )
            for (term, pvalue, overlap, term_size), padj in zip(tested, adjusted)
        ]
