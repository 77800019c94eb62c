"""
Pathway enrichment module for neurodiff

Over-representation testing of gene lists against annotation databases,
either locally from GMT files or through the Enrichr service.
"""

from .engine import EnrichmentEngine
from .enrichr import DEFAULT_ENRICHR_URL, EnrichrClient, create_session
from .gene_sets import GeneSetDatabase
from .local import LocalEnrichmentBackend, hypergeometric_pvalue
from .models import (STATUS_OK, STATUS_UNAVAILABLE, DatabaseEnrichment,
                     EnrichmentBackend, EnrichmentResult, TermHit)

__all__ = [
    "EnrichmentEngine",
    "EnrichrClient",
    "DEFAULT_ENRICHR_URL",
    "create_session",
    "GeneSetDatabase",
    "LocalEnrichmentBackend",
    "hypergeometric_pvalue",
    "EnrichmentBackend",
    "EnrichmentResult",
    "DatabaseEnrichment",
    "TermHit",
    "STATUS_OK",
    "STATUS_UNAVAILABLE",
]
