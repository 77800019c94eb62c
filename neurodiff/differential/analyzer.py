"""
Differential expression engine: negative binomial GLM with Wald test and BH correction
"""

import time
from dataclasses import dataclass
from functools import partial
from typing import Dict, Optional

import numpy as np
import pandas as pd
from statsmodels.stats.multitest import multipletests

from ..dataset import Design, ExpressionDataset
from ..dataset.models import SYMBOL_COLUMN
from ..exceptions import InputValidationError
from ..utils import get_logger, run_parallel
from .dispersion import (DispersionEstimates, DispersionTrend,
                         estimate_dispersions, estimate_size_factors,
                         residual_degrees_of_freedom)
from .gene_lists import GeneList, ThresholdConfig, extract_gene_list
from .glm import GeneFit, fit_gene

logger = get_logger(__name__)

RESULT_COLUMNS = [
    SYMBOL_COLUMN,
    "baseMean",
    "log2FoldChange",
    "lfcSE",
    "stat",
    "pvalue",
    "padj",
    "dispersion",
    "converged",
    "tested",
    "untested_reason",
]


@dataclass(frozen=True)
class DifferentialSummary:
    """Up/down counts among tested genes at a given alpha"""

    alpha: float
    n_genes: int
    n_tested: int
    n_significant: int
    n_up: int
    n_down: int

    def to_dict(self) -> Dict[str, float]:
        return {
            "alpha": self.alpha,
            "n_genes": self.n_genes,
            "n_tested": self.n_tested,
            "n_significant": self.n_significant,
            "n_up": self.n_up,
            "n_down": self.n_down,
        }


@dataclass(frozen=True)
class DifferentialExpressionResult:
    """Ranked per-gene differential expression results for one contrast"""

    table: pd.DataFrame
    design: Design
    reference_level: str
    test_level: str
    coefficient: str
    size_factors: pd.Series
    dispersion_trend: Optional[DispersionTrend]
    prior_variance: Optional[float] = None
    alpha: float = 0.1
    execution_time: Optional[float] = None

    @property
    def n_tested(self) -> int:
        return int(self.table["tested"].sum())

    @property
    def tested(self) -> pd.DataFrame:
        return self.table[self.table["tested"]]

    def summary(self, alpha: Optional[float] = None) -> DifferentialSummary:
        """
        Count significant genes by direction

        Args:
            alpha: Adjusted p-value cutoff (strict), defaults to the engine alpha

        Returns:
            DifferentialSummary
        """
        alpha = self.alpha if alpha is None else alpha
        tested = self.tested
        significant = tested[tested["padj"] < alpha]

        return DifferentialSummary(
            alpha=alpha,
            n_genes=len(self.table),
            n_tested=len(tested),
            n_significant=len(significant),
            n_up=int((significant["log2FoldChange"] > 0).sum()),
            n_down=int((significant["log2FoldChange"] < 0).sum()),
        )

    def gene_list(self, config: ThresholdConfig) -> GeneList:
        return extract_gene_list(self.table, config)


def benjamini_hochberg(pvalues: pd.Series) -> pd.Series:
    """BH adjusted p-values; missing p-values stay missing and are not counted"""
    adjusted = pd.Series(np.nan, index=pvalues.index, dtype=float)
    present = pvalues.notna()
    if present.any():
        _, padj, _, _ = multipletests(pvalues[present].to_numpy(), method="fdr_bh")
        adjusted[present] = np.clip(padj, 0.0, 1.0)
    return adjusted


def rank_results(table: pd.DataFrame) -> pd.DataFrame:
    """Sort by padj, then pvalue ascending, then log2FoldChange descending; untested last"""
    return table.sort_values(
        by=["tested", "padj", "pvalue", "log2FoldChange"],
        ascending=[False, True, True, False],
        na_position="last",
        kind="mergesort",
    )


def _fit_task(item, design_matrix, offset, coefficient):
    y, dispersion = item
    return fit_gene(y, design_matrix, offset, dispersion, coefficient)


class DifferentialExpressionEngine:
    """
    Per-gene negative binomial GLM differential expression

    The model is ``log(mu) = log(size factor) + X beta`` with X the Design
    model matrix (intercept, covariates, group dummies). Dispersions are
    estimated in two passes (gene-wise, then shrunk towards a trend), and
    the tested group coefficient is assessed with a Wald test.
    """

    def __init__(
        self,
        alpha: float = 0.1,
        min_dispersion: float = 1e-8,
        outlier_sd: float = 2.0,
        prior_variance_floor: float = 0.25,
        n_jobs: int = 1,
    ):
        self.alpha = alpha
        self.min_dispersion = min_dispersion
        self.outlier_sd = outlier_sd
        self.prior_variance_floor = prior_variance_floor
        self.n_jobs = n_jobs

    def run(self, dataset: ExpressionDataset, design: Design) -> DifferentialExpressionResult:
        """
        Test every gene of ``dataset`` for the Design's group effect

        Args:
            dataset: Raw counts (typically restricted to expressed genes)
            design: Statistical design with explicit reference level

        Returns:
            DifferentialExpressionResult
        """
        start_time = time.time()

        design.validate(dataset.samples)
        model_matrix = design.model_matrix(dataset.samples)
        coefficient = design.tested_coefficient(dataset.samples)
        coef_index = list(model_matrix.columns).index(coefficient)
        design_matrix = model_matrix.to_numpy(dtype=float)

        if residual_degrees_of_freedom(design_matrix) <= 0:
            raise InputValidationError(
                f"Design with {design_matrix.shape[1]} coefficients leaves no residual "
                f"degrees of freedom for {dataset.n_samples} samples",
                field="design",
            )

        counts = dataset.counts.to_numpy(dtype=float)
        all_zero = counts.sum(axis=1) == 0
        testable = ~all_zero

        logger.info(
            f"Differential expression: {dataset.n_genes} genes, {dataset.n_samples} "
            f"samples, coefficient {coefficient} "
            f"({int(all_zero.sum())} all-zero genes skipped)"
        )

        size_factors = estimate_size_factors(counts)
        base_mean = (counts / size_factors[np.newaxis, :]).mean(axis=1)

        dispersions = estimate_dispersions(
            counts[testable],
            design_matrix,
            size_factors,
            min_disp=self.min_dispersion,
            outlier_sd=self.outlier_sd,
            prior_variance_floor=self.prior_variance_floor,
            n_jobs=self.n_jobs,
        )

        fits = run_parallel(
            partial(
                _fit_task,
                design_matrix=design_matrix,
                offset=np.log(size_factors),
                coefficient=coef_index,
            ),
            zip(counts[testable], dispersions.final),
            n_jobs=self.n_jobs,
        )

        table = self._build_table(dataset, base_mean, testable, dispersions, fits)
        table["padj"] = benjamini_hochberg(table["pvalue"])
        table = rank_results(table)

        levels = design.group_levels(dataset.samples)
        result = DifferentialExpressionResult(
            table=table,
            design=design,
            reference_level=levels[0],
            test_level=design.resolved_test_level(dataset.samples),
            coefficient=coefficient,
            size_factors=pd.Series(size_factors, index=dataset.sample_ids, name="size_factor"),
            dispersion_trend=dispersions.trend,
            prior_variance=dispersions.prior_variance,
            alpha=self.alpha,
            execution_time=time.time() - start_time,
        )

        summary = result.summary()
        logger.info(
            f"Differential expression done in {result.execution_time:.1f}s: "
            f"{summary.n_tested} tested, {summary.n_significant} with padj < {self.alpha} "
            f"({summary.n_up} up, {summary.n_down} down in {result.test_level} "
            f"vs {result.reference_level})"
        )

        return result

    def _build_table(
        self,
        dataset: ExpressionDataset,
        base_mean: np.ndarray,
        testable: np.ndarray,
        dispersions: DispersionEstimates,
        fits,
    ) -> pd.DataFrame:
        n_genes = dataset.n_genes

        dispersion = np.full(n_genes, np.nan)
        dispersion[testable] = dispersions.final

        all_fits = [GeneFit.untested("all counts zero")] * n_genes
        for position, fit in zip(np.flatnonzero(testable), fits):
            all_fits[position] = fit

        table = pd.DataFrame(
            {
                SYMBOL_COLUMN: dataset.symbols.to_numpy(),
                "baseMean": base_mean,
                "log2FoldChange": [fit.log2_fold_change for fit in all_fits],
                "lfcSE": [fit.lfc_se for fit in all_fits],
                "stat": [fit.stat for fit in all_fits],
                "pvalue": [fit.pvalue for fit in all_fits],
                "padj": np.nan,
                "dispersion": dispersion,
                "converged": [fit.converged for fit in all_fits],
                "tested": [fit.tested for fit in all_fits],
                "untested_reason": [fit.untested_reason for fit in all_fits],
            },
            index=pd.Index(dataset.gene_ids, name="gene_id"),
        )

        n_failed = int((~table["tested"] & testable).sum())
        if n_failed:
            logger.warning(f"{n_failed} genes could not be fitted and are untested")
        n_unconverged = int((table["tested"] & ~table["converged"]).sum())
        if n_unconverged:
            logger.warning(f"{n_unconverged} tested genes did not converge")

        return table[RESULT_COLUMNS]
