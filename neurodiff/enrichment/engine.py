"""
Enrichment engine: per (gene list, database) tasks with bounded concurrency and retry
"""

import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Sequence, Tuple

import pandas as pd
import requests

from ..differential.gene_lists import GeneList
from ..exceptions import EnrichmentServiceError, InputValidationError
from ..utils import get_logger
from .models import (ENRICHMENT_COLUMNS, STATUS_OK, STATUS_UNAVAILABLE,
                     DatabaseEnrichment, EnrichmentBackend, EnrichmentResult,
                     TermHit, empty_enrichment_table, overlap_ratio)

logger = get_logger(__name__)

TRANSIENT_ERRORS = (EnrichmentServiceError, requests.RequestException)


class EnrichmentEngine:
    """
    Test gene lists for term over-representation in an ordered set of databases

    Every (gene list, database) pair is an independent task. Transient
    failures are retried with exponential backoff; a task that exhausts its
    attempts marks only its database as unavailable.
    """

    def __init__(
        self,
        backend: EnrichmentBackend,
        databases: Sequence[str],
        cutoff: float = 0.1,
        max_workers: int = 4,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not databases:
            raise InputValidationError("At least one database is required", field="databases")
        if len(set(databases)) != len(databases):
            raise InputValidationError("Duplicated database names", field="databases")
        if max_attempts < 1:
            raise InputValidationError("max_attempts must be at least 1", field="max_attempts")

        self.backend = backend
        self.databases = list(databases)
        self.cutoff = cutoff
        self.max_workers = max(1, max_workers)
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.sleep = sleep

    def run(self, gene_list: GeneList) -> EnrichmentResult:
        return self.run_batch([gene_list])[gene_list.name]

    def run_batch(self, gene_lists: Sequence[GeneList]) -> Dict[str, EnrichmentResult]:
        """
        Enrich several gene lists; results keep list and database order

        Args:
            gene_lists: Gene lists with unique names

        Returns:
            Dictionary of gene list name -> EnrichmentResult
        """
        names = [gene_list.name for gene_list in gene_lists]
        if len(set(names)) != len(names):
            raise InputValidationError(f"Gene list names must be unique: {names}")

        tasks: List[Tuple[GeneList, str]] = [
            (gene_list, database) for gene_list in gene_lists for database in self.databases
        ]

        logger.info(
            f"Running {len(tasks)} enrichment tasks ({len(gene_lists)} gene lists x "
            f"{len(self.databases)} databases) with backend '{self.backend.name}'"
        )

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = [executor.submit(self._run_task, gl, db) for gl, db in tasks]
            outcomes = [future.result() for future in futures]

        results: Dict[str, EnrichmentResult] = {}
        for gene_list in gene_lists:
            per_database = {
                outcome.database: outcome
                for outcome in outcomes
                if outcome.gene_list_name == gene_list.name
            }
            results[gene_list.name] = EnrichmentResult(
                gene_list=gene_list,
                databases={db: per_database[db] for db in self.databases},
                cutoff=self.cutoff,
                parameters={"backend": self.backend.name, "cutoff": self.cutoff},
            )

            result = results[gene_list.name]
            logger.info(
                f"{gene_list.name}: {len(gene_list)} genes, "
                f"{result.significant_terms} terms at adjusted p <= {self.cutoff}"
                + (f", unavailable: {result.unavailable}" if result.unavailable else "")
            )

        return results

    def _run_task(self, gene_list: GeneList, database: str) -> DatabaseEnrichment:
        if gene_list.is_empty:
            return DatabaseEnrichment(
                gene_list_name=gene_list.name,
                database=database,
                status=STATUS_OK,
                table=empty_enrichment_table(),
            )

        last_error = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                hits = self.backend.query(list(gene_list.symbols), [database]).get(database, [])
            except TRANSIENT_ERRORS as e:
                last_error = e
                logger.warning(
                    f"Enrichment of {gene_list.name} in {database} failed "
                    f"(attempt {attempt}/{self.max_attempts}): {e}"
                )
                if attempt < self.max_attempts:
                    self.sleep(self.backoff_seconds * 2 ** (attempt - 1))
                continue
            except Exception as e:
                logger.error(
                    f"{database} unavailable for {gene_list.name} "
                    f"(unexpected {type(e).__name__}): {e}"
                )
                return self._unavailable(gene_list, database, f"{type(e).__name__}: {e}", attempt)

            return DatabaseEnrichment(
                gene_list_name=gene_list.name,
                database=database,
                status=STATUS_OK,
                table=self._to_table(gene_list, hits),
                attempts=attempt,
            )

        logger.error(f"{database} unavailable for {gene_list.name}: {last_error}")
        return self._unavailable(gene_list, database, str(last_error), self.max_attempts)

    def _unavailable(
        self, gene_list: GeneList, database: str, error: str, attempts: int
    ) -> DatabaseEnrichment:
        return DatabaseEnrichment(
            gene_list_name=gene_list.name,
            database=database,
            status=STATUS_UNAVAILABLE,
            table=empty_enrichment_table(),
            error=error,
            attempts=attempts,
        )

    def _to_table(self, gene_list: GeneList, hits: Sequence[TermHit]) -> pd.DataFrame:
        """Keep terms at or below the cutoff; overlap genes restricted to the list"""
        lookup = {symbol.upper(): symbol for symbol in gene_list.symbols}

        rows = []
        for hit in hits:
            adjusted = hit.adjusted_p_value
            if adjusted is None or pd.isna(adjusted) or adjusted > self.cutoff:
                continue

            genes = tuple(
                dict.fromkeys(
                    lookup[gene.upper()] for gene in hit.overlap_genes if gene.upper() in lookup
                )
            )
            overlap_count = len(genes) if hit.overlap_genes else hit.overlap_count

            rows.append(
                {
                    "term": hit.term,
                    "adjusted_p_value": min(max(float(adjusted), 0.0), 1.0),
                    "p_value": hit.p_value,
                    "overlap_count": overlap_count,
                    "term_size": hit.term_size,
                    "overlap_ratio": overlap_ratio(overlap_count, hit.term_size),
                    "overlap_genes": ";".join(genes),
                }
            )

        if not rows:
            return empty_enrichment_table()

        table = pd.DataFrame(rows, columns=ENRICHMENT_COLUMNS)
        return table.sort_values(
            ["adjusted_p_value", "p_value"], kind="mergesort", na_position="last"
        ).reset_index(drop=True)
