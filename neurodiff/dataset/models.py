"""
Core data containers: expression dataset and statistical design
"""

from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd
from pandas.api.types import is_numeric_dtype

from ..exceptions import InputValidationError

SYMBOL_COLUMN = "symbol"


def _check_labels(index: pd.Index, what: str) -> None:
    if index.has_duplicates:
        duplicated = index[index.duplicated()].unique().tolist()[:5]
        raise InputValidationError(f"Duplicated {what} identifiers: {duplicated}")


@dataclass(frozen=True)
class ExpressionDataset:
    """
    Raw RNA-seq counts with sample metadata and gene annotation

    Attributes:
        counts: Integer count matrix, genes x samples
        samples: Sample metadata indexed by sample id (same order as columns)
        genes: Gene annotation indexed by gene id with a ``symbol`` column
        tpm: Optional abundance matrix with the same shape as ``counts``
    """

    counts: pd.DataFrame
    samples: pd.DataFrame
    genes: pd.DataFrame
    tpm: Optional[pd.DataFrame] = None

    def __post_init__(self):
        counts = self.counts

        _check_labels(counts.index, "gene")
        _check_labels(counts.columns, "sample")

        if not counts.index.equals(self.genes.index):
            raise InputValidationError(
                f"Gene annotation ({len(self.genes)} rows) does not match the "
                f"count matrix genes ({counts.shape[0]} rows) in content or order",
                field="genes",
            )

        if not counts.columns.equals(self.samples.index):
            raise InputValidationError(
                f"Sample metadata ({len(self.samples)} rows) does not match the "
                f"count matrix samples ({counts.shape[1]} columns) in content or order",
                field="samples",
            )

        if SYMBOL_COLUMN not in self.genes.columns:
            raise InputValidationError(
                f"Gene annotation lacks a '{SYMBOL_COLUMN}' column", field="genes"
            )

        if not all(is_numeric_dtype(dtype) for dtype in counts.dtypes):
            raise InputValidationError("Count matrix must be numeric", field="counts")

        values = counts.to_numpy(dtype=float)
        if not np.all(np.isfinite(values)):
            raise InputValidationError(
                "Count matrix contains missing or infinite values", field="counts"
            )
        if np.any(values < 0):
            raise InputValidationError(
                "Count matrix contains negative values", field="counts"
            )
        if not np.all(values == np.round(values)):
            raise InputValidationError(
                "Count matrix must contain integer counts", field="counts"
            )

        if self.tpm is not None and (
            not self.tpm.index.equals(counts.index)
            or not self.tpm.columns.equals(counts.columns)
        ):
            raise InputValidationError(
                "TPM matrix must have the same genes and samples as the counts",
                field="tpm",
            )

    @classmethod
    def from_frames(
        cls,
        counts: pd.DataFrame,
        samples: pd.DataFrame,
        genes: pd.DataFrame,
        tpm: Optional[pd.DataFrame] = None,
    ) -> "ExpressionDataset":
        """Build a dataset, aligning metadata rows to the count matrix order"""
        missing_samples = set(counts.columns) - set(samples.index)
        if missing_samples:
            raise InputValidationError(
                f"Samples without metadata: {sorted(missing_samples)[:5]}",
                field="samples",
            )
        missing_genes = set(counts.index) - set(genes.index)
        if missing_genes:
            raise InputValidationError(
                f"Genes without annotation: {sorted(missing_genes)[:5]}",
                field="genes",
            )

        return cls(
            counts=counts.copy(),
            samples=samples.loc[counts.columns].copy(),
            genes=genes.loc[counts.index].copy(),
            tpm=None if tpm is None else tpm.loc[counts.index, counts.columns].copy(),
        )

    @property
    def n_genes(self) -> int:
        return self.counts.shape[0]

    @property
    def n_samples(self) -> int:
        return self.counts.shape[1]

    @property
    def gene_ids(self) -> List[str]:
        return list(self.counts.index)

    @property
    def sample_ids(self) -> List[str]:
        return list(self.counts.columns)

    @property
    def symbols(self) -> pd.Series:
        return self.genes[SYMBOL_COLUMN]

    def subset_genes(self, gene_ids: Iterable[str]) -> "ExpressionDataset":
        """Return a new dataset restricted to ``gene_ids`` (original order kept)"""
        wanted = set(gene_ids)
        unknown = wanted - set(self.counts.index)
        if unknown:
            raise InputValidationError(f"Unknown gene ids: {sorted(unknown)[:5]}")

        keep = [gene for gene in self.counts.index if gene in wanted]
        return ExpressionDataset(
            counts=self.counts.loc[keep].copy(),
            samples=self.samples.copy(),
            genes=self.genes.loc[keep].copy(),
            tpm=None if self.tpm is None else self.tpm.loc[keep].copy(),
        )

    def drop_samples(self, sample_ids: Iterable[str]) -> "ExpressionDataset":
        """Return a new dataset without ``sample_ids``"""
        drop = set(sample_ids)
        unknown = drop - set(self.counts.columns)
        if unknown:
            raise InputValidationError(
                f"Cannot exclude unknown samples: {sorted(unknown)}",
                field="exclude_samples",
            )

        keep = [sample for sample in self.counts.columns if sample not in drop]
        return ExpressionDataset(
            counts=self.counts[keep].copy(),
            samples=self.samples.loc[keep].copy(),
            genes=self.genes.copy(),
            tpm=None if self.tpm is None else self.tpm[keep].copy(),
        )


@dataclass(frozen=True)
class Design:
    """
    Statistical design: a group factor with an explicit reference level plus covariates

    Fold changes are always reported as ``test_level`` relative to
    ``reference_level``. ``test_level`` may be omitted only when the group
    factor has exactly two levels.
    """

    group_column: str
    reference_level: str
    test_level: Optional[str] = None
    covariates: Tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self):
        if not self.reference_level:
            raise InputValidationError(
                "Design reference level must be set explicitly",
                field="reference_level",
            )
        if self.test_level is not None and self.test_level == self.reference_level:
            raise InputValidationError(
                "Test level must differ from the reference level", field="test_level"
            )
        if self.group_column in self.covariates:
            raise InputValidationError(
                "Group column cannot also be a covariate", field="covariates"
            )
        object.__setattr__(self, "covariates", tuple(self.covariates))

    @property
    def columns(self) -> List[str]:
        """Metadata columns referenced by this design"""
        return [self.group_column, *self.covariates]

    def group_levels(self, samples: pd.DataFrame) -> List[str]:
        """Group levels present in ``samples``, reference level first"""
        self.validate(samples)
        observed = sorted(set(samples[self.group_column].astype(str)))
        observed.remove(self.reference_level)
        return [self.reference_level, *observed]

    def resolved_test_level(self, samples: pd.DataFrame) -> str:
        levels = self.group_levels(samples)
        if self.test_level is not None:
            return self.test_level
        return levels[1]

    def tested_coefficient(self, samples: pd.DataFrame) -> str:
        """Name of the model matrix column holding the tested group effect"""
        return self._dummy_name(self.group_column, self.resolved_test_level(samples))

    def validate(self, samples: pd.DataFrame) -> None:
        """Raise InputValidationError if ``samples`` cannot support this design"""
        missing = [column for column in self.columns if column not in samples.columns]
        if missing:
            raise InputValidationError(
                f"Design references metadata columns absent from samples: {missing}",
                field="design",
            )

        for column in self.columns:
            if samples[column].isna().any():
                raise InputValidationError(
                    f"Metadata column '{column}' has missing values", field=column
                )

        levels = set(samples[self.group_column].astype(str))
        if len(levels) < 2:
            raise InputValidationError(
                f"Group factor '{self.group_column}' needs at least 2 levels, "
                f"found {sorted(levels)}",
                field=self.group_column,
            )
        if self.reference_level not in levels:
            raise InputValidationError(
                f"Reference level '{self.reference_level}' not among group levels "
                f"{sorted(levels)}",
                field="reference_level",
            )
        if self.test_level is not None and self.test_level not in levels:
            raise InputValidationError(
                f"Test level '{self.test_level}' not among group levels {sorted(levels)}",
                field="test_level",
            )
        if self.test_level is None and len(levels) > 2:
            raise InputValidationError(
                f"Group factor has {len(levels)} levels; test_level must be set",
                field="test_level",
            )

    def model_matrix(self, samples: pd.DataFrame) -> pd.DataFrame:
        """
        Build the model matrix (samples x coefficients)

        Numeric covariates are centered, categorical covariates and the group
        factor use treatment coding against their first (or reference) level.
        """
        levels = self.group_levels(samples)

        columns = {"Intercept": np.ones(len(samples))}

        for covariate in self.covariates:
            values = samples[covariate]
            if is_numeric_dtype(values):
                numeric = values.to_numpy(dtype=float)
                if not np.all(np.isfinite(numeric)):
                    raise InputValidationError(
                        f"Covariate '{covariate}' has non-finite values",
                        field=covariate,
                    )
                columns[covariate] = numeric - numeric.mean()
            else:
                values = values.astype(str)
                for level in sorted(set(values))[1:]:
                    columns[self._dummy_name(covariate, level)] = (
                        values == level
                    ).to_numpy(dtype=float)

        groups = samples[self.group_column].astype(str)
        for level in levels[1:]:
            columns[self._dummy_name(self.group_column, level)] = (
                groups == level
            ).to_numpy(dtype=float)

        matrix = pd.DataFrame(columns, index=samples.index)

        rank = np.linalg.matrix_rank(matrix.to_numpy())
        if rank < matrix.shape[1]:
            raise InputValidationError(
                f"Model matrix is not full rank ({rank} < {matrix.shape[1]} "
                f"coefficients); covariates may be confounded with the group",
                field="design",
            )

        return matrix

    @staticmethod
    def _dummy_name(column: str, level: str) -> str:
        return f"{column}[T.{level}]"
