"""
Loading expression datasets from delimited text
"""

import logging
from pathlib import Path
from typing import Union

import pandas as pd

from ..exceptions import InputValidationError
from ..utils.validation import validate_file_exists
from .models import SYMBOL_COLUMN, ExpressionDataset

logger = logging.getLogger(__name__)

COUNTS_FILE = "counts.csv"
SAMPLES_FILE = "samples.csv"
GENES_FILE = "genes.csv"
TPM_FILE = "tpm.csv"


def _read_table(path: Path) -> pd.DataFrame:
    table = pd.read_csv(path, index_col=0)
    table.index = table.index.astype(str)
    return table


def load_expression_dataset(source: Union[str, Path]) -> ExpressionDataset:
    """
    Load an ExpressionDataset from a directory of CSV files

    The directory holds ``counts.csv`` (genes x samples, first column gene
    id), ``samples.csv`` (first column sample id), ``genes.csv`` (first column
    gene id, with a ``symbol`` column) and optionally ``tpm.csv``.

    Args:
        source: Dataset directory

    Returns:
        Validated ExpressionDataset
    """
    source_dir = Path(source)

    if not source_dir.is_dir():
        raise InputValidationError(f"Dataset directory not found: {source_dir}")

    for name in (COUNTS_FILE, SAMPLES_FILE, GENES_FILE):
        if not validate_file_exists(source_dir / name, name):
            raise InputValidationError(f"Missing dataset file: {source_dir / name}")

    logger.info(f"Loading expression dataset from {source_dir}")

    counts = _read_table(source_dir / COUNTS_FILE)
    counts.columns = counts.columns.astype(str)
    samples = _read_table(source_dir / SAMPLES_FILE)
    genes = _read_table(source_dir / GENES_FILE)

    if SYMBOL_COLUMN not in genes.columns:
        raise InputValidationError(
            f"{GENES_FILE} must contain a '{SYMBOL_COLUMN}' column", field="genes"
        )

    tpm = None
    if (source_dir / TPM_FILE).exists():
        tpm = _read_table(source_dir / TPM_FILE)
        tpm.columns = tpm.columns.astype(str)

    dataset = ExpressionDataset.from_frames(counts, samples, genes, tpm=tpm)

    logger.info(
        f"Loaded {dataset.n_genes} genes x {dataset.n_samples} samples"
        f"{' with TPM' if tpm is not None else ''}"
    )

    return dataset
