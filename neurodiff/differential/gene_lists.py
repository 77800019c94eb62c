"""
Threshold-based gene list extraction from a differential expression table
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Tuple

import pandas as pd

from ..dataset.models import SYMBOL_COLUMN
from ..exceptions import InputValidationError

SIGNIFICANCE_COLUMNS = ("padj", "pvalue")


@dataclass(frozen=True)
class ThresholdConfig:
    """
    Gene selection thresholds

    A gene is selected when ``|log2FoldChange| > log2fc_threshold`` and
    ``significance_column < significance_threshold`` (both strict).
    """

    name: str
    log2fc_threshold: float
    significance_threshold: float
    significance_column: str = "padj"

    def __post_init__(self):
        if self.significance_column not in SIGNIFICANCE_COLUMNS:
            raise InputValidationError(
                f"significance_column must be one of {SIGNIFICANCE_COLUMNS}, "
                f"got '{self.significance_column}'",
                field="significance_column",
            )
        if self.log2fc_threshold < 0:
            raise InputValidationError(
                "log2fc_threshold must be non-negative", field="log2fc_threshold"
            )
        if not 0 < self.significance_threshold <= 1:
            raise InputValidationError(
                "significance_threshold must be in (0, 1]",
                field="significance_threshold",
            )

    @classmethod
    def from_dict(cls, params: Dict[str, Any]) -> "ThresholdConfig":
        return cls(
            name=str(params["name"]),
            log2fc_threshold=float(params["log2fc_threshold"]),
            significance_threshold=float(params["significance_threshold"]),
            significance_column=params.get("significance_column", "padj"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "log2fc_threshold": self.log2fc_threshold,
            "significance_threshold": self.significance_threshold,
            "significance_column": self.significance_column,
        }

    def describe(self) -> str:
        return (
            f"|log2FC| > {self.log2fc_threshold:g}, "
            f"{self.significance_column} < {self.significance_threshold:g}"
        )


@dataclass(frozen=True)
class GeneList:
    """Ordered gene symbols selected under one ThresholdConfig"""

    config: ThresholdConfig
    symbols: Tuple[str, ...]
    gene_ids: Tuple[str, ...]
    n_up: int
    n_down: int

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def is_empty(self) -> bool:
        return len(self.symbols) == 0

    def __len__(self) -> int:
        return len(self.symbols)

    def __iter__(self) -> Iterator[str]:
        return iter(self.symbols)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({"gene_id": list(self.gene_ids), "symbol": list(self.symbols)})


def extract_gene_list(table: pd.DataFrame, config: ThresholdConfig) -> GeneList:
    """
    Select genes from a ranked differential expression table

    Table order is preserved. Genes without a symbol are listed under their
    gene id; repeated symbols keep their first (best ranked) occurrence.

    Args:
        table: Differential expression table indexed by gene id
        config: Selection thresholds

    Returns:
        GeneList
    """
    significance = table[config.significance_column]
    lfc = table["log2FoldChange"]

    selected = (
        table["tested"].astype(bool)
        & significance.notna()
        & (significance < config.significance_threshold)
        & (lfc.abs() > config.log2fc_threshold)
    )

    symbols: List[str] = []
    gene_ids: List[str] = []
    seen = set()
    n_up = n_down = 0

    for gene_id, row in table.loc[selected].iterrows():
        symbol = row.get(SYMBOL_COLUMN)
        if symbol is None or pd.isna(symbol) or symbol == "":
            symbol = str(gene_id)
        symbol = str(symbol)
        if symbol in seen:
            continue
        seen.add(symbol)
        symbols.append(symbol)
        gene_ids.append(str(gene_id))
        if row["log2FoldChange"] > 0:
            n_up += 1
        else:
            n_down += 1

    return GeneList(
        config=config,
        symbols=tuple(symbols),
        gene_ids=tuple(gene_ids),
        n_up=n_up,
        n_down=n_down,
    )


DEFAULT_THRESHOLDS = (
    ThresholdConfig("fdr10", 0.0, 0.1, "padj"),
    ThresholdConfig("pvalue_strict", 0.5, 0.001, "pvalue"),
    ThresholdConfig("fdr5_lfc1", 1.0, 0.05, "padj"),
)
