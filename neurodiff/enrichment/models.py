"""
Enrichment data containers and the backend interface
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from ..differential.gene_lists import GeneList

STATUS_OK = "ok"
STATUS_UNAVAILABLE = "unavailable"

ENRICHMENT_COLUMNS = [
    "term",
    "adjusted_p_value",
    "p_value",
    "overlap_count",
    "term_size",
    "overlap_ratio",
    "overlap_genes",
]


@dataclass(frozen=True)
class TermHit:
    """Statistics for one annotation term as reported by a backend"""

    term: str
    adjusted_p_value: float
    overlap_count: int
    overlap_genes: Tuple[str, ...] = ()
    p_value: Optional[float] = None
    term_size: Optional[int] = None


class EnrichmentBackend(ABC):
    """Source of term statistics for a gene list"""

    name = "backend"

    @abstractmethod
    def query(
        self, gene_symbols: Sequence[str], database_names: Sequence[str]
    ) -> Dict[str, List[TermHit]]:
        """
        Args:
            gene_symbols: Query gene symbols
            database_names: Databases to test against

        Returns:
            Mapping database -> term hits
        """


def empty_enrichment_table() -> pd.DataFrame:
    return pd.DataFrame({column: pd.Series(dtype=object) for column in ENRICHMENT_COLUMNS})


@dataclass(frozen=True)
class DatabaseEnrichment:
    """Outcome of one (gene list, database) enrichment task"""

    gene_list_name: str
    database: str
    status: str
    table: pd.DataFrame
    error: Optional[str] = None
    attempts: int = 0

    @property
    def is_available(self) -> bool:
        return self.status == STATUS_OK

    @property
    def n_terms(self) -> int:
        return len(self.table)


@dataclass(frozen=True)
class EnrichmentResult:
    """Per-database enrichment for one gene list"""

    gene_list: GeneList
    databases: Dict[str, DatabaseEnrichment]
    cutoff: float
    parameters: Dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.gene_list.name

    @property
    def unavailable(self) -> List[str]:
        return [name for name, db in self.databases.items() if not db.is_available]

    @property
    def significant_terms(self) -> int:
        return sum(db.n_terms for db in self.databases.values())

    def to_frame(self) -> pd.DataFrame:
        """All databases stacked, with ``gene_list`` and ``database`` columns"""
        frames = []
        for name, db in self.databases.items():
            frame = db.table.copy()
            frame.insert(0, "database", name)
            frame.insert(0, "gene_list", self.name)
            frames.append(frame)
        if not frames:
            return empty_enrichment_table()
        return pd.concat(frames, ignore_index=True)

    def status_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [
                {
                    "gene_list": self.name,
                    "database": name,
                    "status": db.status,
                    "n_terms": db.n_terms,
                    "attempts": db.attempts,
                    "error": db.error,
                }
                for name, db in self.databases.items()
            ]
        )


def overlap_ratio(overlap_count: int, term_size: Optional[int]) -> float:
    if not term_size:
        return np.nan
    return overlap_count / term_size
