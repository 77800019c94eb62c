"""
Result export and display formatting
"""

import re
from pathlib import Path
from typing import Dict, Union

import numpy as np
import pandas as pd

from .exceptions import InputValidationError
from .utils import get_logger, log_execution_time, validate_output_permissions

logger = get_logger(__name__)

PVALUE_COLUMNS = ("pvalue", "padj", "p_value", "adjusted_p_value")
FOLD_CHANGE_COLUMNS = ("log2FoldChange", "lfcSE")


def round_significant(values: pd.Series, digits: int = 3) -> pd.Series:
    """Round to ``digits`` significant figures; zeros and missing values unchanged"""
    numeric = pd.to_numeric(values, errors="coerce").astype(float)
    return numeric.map(
        lambda value: float(f"{value:.{digits}g}") if np.isfinite(value) else value
    )


def format_for_display(
    table: pd.DataFrame, lfc_decimals: int = 3, p_digits: int = 3
) -> pd.DataFrame:
    """
    Rounded copy of a result table for display

    Fold changes are rounded to ``lfc_decimals`` decimals and p-values to
    ``p_digits`` significant figures. The input table is not modified.
    """
    display = table.copy()
    for column in FOLD_CHANGE_COLUMNS:
        if column in display.columns:
            display[column] = display[column].astype(float).round(lfc_decimals)
    for column in PVALUE_COLUMNS:
        if column in display.columns:
            display[column] = round_significant(display[column], p_digits)
    return display


def _safe_name(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "_", name)


@log_execution_time
def export_results(result, output_dir: Union[str, Path]) -> Dict[str, Path]:
    """
    Write pipeline results as CSV at full precision

    Args:
        result: PipelineResult from NeuroDiffAnalysis.run
        output_dir: Output directory (created if missing)

    Returns:
        Dictionary of output name -> file path
    """
    output_path = Path(output_dir)
    if not validate_output_permissions(output_path):
        raise InputValidationError(
            f"Output directory is not writable: {output_path}", field="output_dir"
        )
    files: Dict[str, Path] = {}

    def write(name: str, frame: pd.DataFrame, relative: str, index: bool = True) -> None:
        path = output_path / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        frame.to_csv(path, index=index)
        files[name] = path

    write("differential_expression", result.differential.table, "differential_expression.csv")
    write(
        "expressed_genes",
        result.expressed.membership.rename_axis("gene_id").to_frame(),
        "expressed_genes.csv",
    )
    write(
        "normalized_expression",
        result.normalized.values.rename_axis("gene_id"),
        "normalized_expression.csv",
    )

    write(
        "high_variance_genes",
        pd.DataFrame({"gene_id": result.hvg}),
        "quality_control/high_variance_genes.csv",
        index=False,
    )
    write(
        "pca_coordinates",
        result.pca.coordinates.rename_axis("sample_id"),
        "quality_control/pca_coordinates.csv",
    )
    write(
        "pca_explained_variance",
        result.pca.explained_variance_ratio.rename_axis("component").to_frame(),
        "quality_control/pca_explained_variance.csv",
    )
    write(
        "covariate_correlations",
        result.covariate_correlations,
        "quality_control/covariate_correlations.csv",
        index=False,
    )

    for name, gene_list in result.gene_lists.items():
        write(
            f"gene_list_{name}",
            gene_list.to_frame(),
            f"gene_lists/{_safe_name(name)}.csv",
            index=False,
        )

    status_frames = []
    for name, enrichment in result.enrichment.items():
        for database, db_result in enrichment.databases.items():
            write(
                f"enrichment_{name}_{database}",
                db_result.table,
                f"enrichment/{_safe_name(name)}/{_safe_name(database)}.csv",
                index=False,
            )
        status_frames.append(enrichment.status_frame())
    if status_frames:
        write(
            "enrichment_status",
            pd.concat(status_frames, ignore_index=True),
            "enrichment/status.csv",
            index=False,
        )

    summary_file = output_path / "pipeline_summary.txt"
    with open(summary_file, "w") as f:
        f.write(result.summary_text())
    files["pipeline_summary"] = summary_file

    logger.info(f"Exported {len(files)} result files to {output_path}")
    return files
