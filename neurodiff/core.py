"""
Core neurodiff analysis orchestrator
"""

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import pandas as pd

from .config import Config, load_config, validate_config
from .dataset import Design, ExpressionDataset
from .differential import (DifferentialExpressionEngine,
                           DifferentialExpressionResult, GeneList,
                           ThresholdConfig)
from .enrichment import (DEFAULT_ENRICHR_URL, EnrichmentBackend,
                         EnrichmentEngine, EnrichmentResult, EnrichrClient,
                         LocalEnrichmentBackend)
from .exceptions import InputValidationError, PipelineError
from .expression import ExpressedGeneClassifier, ExpressedGeneSet
from .export import export_results
from .normalization import NormalizedMatrix, Normalizer
from .quality_control import (HighVarianceGeneSelector, PCAProjector,
                              PCAResult, filter_confounded)
from .utils import get_logger, setup_logging, validate_environment

logger = get_logger(__name__)

PIPELINE_STEPS = [
    "sample_exclusion",
    "expression_filter",
    "normalization",
    "quality_control",
    "differential_expression",
    "gene_lists",
    "enrichment",
]


@dataclass(frozen=True)
class PipelineResult:
    """Artifacts of one pipeline run, one per stage"""

    dataset: ExpressionDataset
    design: Design
    excluded_samples: Tuple[str, ...]
    expressed: ExpressedGeneSet
    normalized: NormalizedMatrix
    hvg: List[str]
    pca: PCAResult
    covariate_correlations: pd.DataFrame
    confounded: pd.DataFrame
    differential: DifferentialExpressionResult
    gene_lists: Dict[str, GeneList]
    enrichment: Dict[str, EnrichmentResult]
    execution_times: Dict[str, float] = field(default_factory=dict)
    project_name: str = "neurodiff_analysis"

    def summary_text(self) -> str:
        """Plain text summary of the run"""
        de_summary = self.differential.summary()
        lines = [
            "neurodiff Pipeline Summary",
            "=" * 30,
            "",
            f"Project: {self.project_name}",
            f"Contrast: {self.differential.test_level} vs {self.differential.reference_level} "
            f"({self.differential.coefficient})",
            f"Covariates: {', '.join(self.design.covariates) or 'none'}",
            f"Samples: {self.dataset.n_samples} "
            f"(excluded: {', '.join(self.excluded_samples) or 'none'})",
            f"Expressed genes: {len(self.expressed)} of {len(self.expressed.all_gene_ids)} "
            f"(Ashman's D {self.expressed.separation:.2f})",
            "",
            "Differential expression:",
            f"  tested: {de_summary.n_tested}",
            f"  padj < {de_summary.alpha}: {de_summary.n_significant} "
            f"({de_summary.n_up} up, {de_summary.n_down} down)",
            "",
            "Quality control:",
            f"  high-variance genes: {len(self.hvg)}",
            f"  confounded component/covariate pairs: {len(self.confounded)}",
            "",
            "Gene lists:",
        ]
        for name, gene_list in self.gene_lists.items():
            lines.append(
                f"  {name} ({gene_list.config.describe()}): {len(gene_list)} genes "
                f"({gene_list.n_up} up, {gene_list.n_down} down)"
            )

        lines.extend(["", "Enrichment:"])
        for name, enrichment in self.enrichment.items():
            for database, db_result in enrichment.databases.items():
                status = "OK" if db_result.is_available else f"UNAVAILABLE ({db_result.error})"
                lines.append(f"  {name} / {database}: {db_result.n_terms} terms, {status}")

        lines.extend(["", "Execution Times:"])
        for step, exec_time in self.execution_times.items():
            lines.append(f"  {step}: {exec_time:.2f} seconds")

        return "\n".join(lines) + "\n"


class NeuroDiffAnalysis:
    """
    Main orchestrator for the neurodiff RNA-seq pipeline

    Coordinates sample exclusion, expressed gene filtering, normalization,
    QC diagnostics, differential expression, gene list extraction and
    enrichment. Any fatal stage error is raised as PipelineError naming the
    stage.
    """

    def __init__(
        self,
        config: Union[str, Path, Config, Dict[str, Any]],
        log_level: str = "INFO",
        log_file: Optional[Union[str, Path]] = None,
        enrichment_backend: Optional[EnrichmentBackend] = None,
    ):
        """
        Initialize neurodiff analysis

        Args:
            config: Configuration file path, Config object, or config dict
            log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
            log_file: Optional log file path
            enrichment_backend: Backend overriding the configured one
        """
        setup_logging(level=log_level, log_file=log_file)
        logger.info("Initializing neurodiff analysis pipeline")

        if isinstance(config, (str, Path)):
            self.config = load_config(config)
        elif isinstance(config, dict):
            self.config = Config(**config)
        elif isinstance(config, Config):
            self.config = config
        else:
            raise ValueError(
                "Invalid config type. Expected str, Path, dict, or Config object"
            )

        self._enrichment_backend = enrichment_backend
        self._validate_environment()
        self.execution_times: Dict[str, float] = {}

    def _validate_environment(self) -> None:
        issues = validate_config(self.config)
        if issues:
            logger.warning("Configuration issues found:")
            for issue in issues:
                logger.warning(f"  - {issue}")

        env_issues = validate_environment()
        if env_issues:
            logger.warning("Environment issues found:")
            for issue in env_issues:
                logger.warning(f"  - {issue}")

    def build_enrichment_backend(self) -> EnrichmentBackend:
        """Backend selected by the ``enrichment`` config section"""
        if self._enrichment_backend is not None:
            return self._enrichment_backend

        params = self.config.enrichment
        backend = params.get("backend", "enrichr")
        if backend == "local":
            return LocalEnrichmentBackend.from_gmt_files(params.get("gmt_files", {}))
        if backend == "enrichr":
            return EnrichrClient(
                base_url=params.get("enrichr_url", DEFAULT_ENRICHR_URL),
                timeout=params.get("timeout", 30),
                min_request_interval=params.get("min_request_interval", 0.5),
            )
        raise InputValidationError(f"Unknown enrichment backend: {backend}", field="enrichment.backend")

    def run(
        self,
        dataset: ExpressionDataset,
        design: Optional[Design] = None,
        exclude_samples: Optional[Sequence[str]] = None,
        run_enrichment: bool = True,
    ) -> PipelineResult:
        """
        Run the complete neurodiff pipeline

        Args:
            dataset: Input expression dataset
            design: Statistical design (default: built from the config)
            exclude_samples: Samples to drop (default: config ``exclude_samples``)
            run_enrichment: Query enrichment databases for each gene list

        Returns:
            PipelineResult
        """
        logger.info("=" * 60)
        logger.info("Starting neurodiff analysis pipeline")
        logger.info("=" * 60)

        start_time = time.time()
        self.execution_times = {}
        artifacts: Dict[str, Any] = {}

        if exclude_samples is None:
            exclude_samples = self.config.exclude_samples
        excluded = tuple(exclude_samples or ())

        for step in PIPELINE_STEPS:
            if step == "enrichment" and not run_enrichment:
                artifacts["enrichment"] = {}
                continue

            step_start = time.time()
            logger.info(f"{'=' * 20} STEP: {step.upper()} {'=' * 20}")

            try:
                if step == "sample_exclusion":
                    artifacts["design"] = design or self.config.build_design()
                    artifacts["dataset"] = self.exclude_samples(dataset, excluded)
                elif step == "expression_filter":
                    artifacts["filtered"], artifacts["expressed"] = self.run_expression_filter(
                        artifacts["dataset"]
                    )
                elif step == "normalization":
                    artifacts["normalized"] = self.run_normalization(
                        artifacts["filtered"], artifacts["design"]
                    )
                elif step == "quality_control":
                    artifacts.update(
                        self.run_quality_control(artifacts["normalized"], artifacts["dataset"])
                    )
                elif step == "differential_expression":
                    artifacts["differential"] = self.run_differential_expression(
                        artifacts["filtered"], artifacts["design"]
                    )
                elif step == "gene_lists":
                    artifacts["gene_lists"] = self.run_gene_lists(artifacts["differential"])
                elif step == "enrichment":
                    artifacts["enrichment"] = self.run_enrichment(artifacts["gene_lists"])
            except Exception as e:
                logger.error(f"Step {step} failed: {e}")
                raise PipelineError(step, e) from e

            step_time = time.time() - step_start
            self.execution_times[step] = step_time
            logger.info(f"Step {step} completed in {step_time:.2f} seconds")

        self.execution_times["total"] = time.time() - start_time

        result = PipelineResult(
            dataset=artifacts["dataset"],
            design=artifacts["design"],
            excluded_samples=excluded,
            expressed=artifacts["expressed"],
            normalized=artifacts["normalized"],
            hvg=artifacts["hvg"],
            pca=artifacts["pca"],
            covariate_correlations=artifacts["covariate_correlations"],
            confounded=artifacts["confounded"],
            differential=artifacts["differential"],
            gene_lists=artifacts["gene_lists"],
            enrichment=artifacts["enrichment"],
            execution_times=dict(self.execution_times),
            project_name=self.config.project_name,
        )

        self._log_pipeline_summary(result)

        if self.config.output_dir:
            self.save_results(result, self.config.output_dir)

        logger.info("=" * 60)
        logger.info(f"neurodiff pipeline completed in {self.execution_times['total']:.2f} seconds")
        logger.info("=" * 60)

        return result

    def exclude_samples(
        self, dataset: ExpressionDataset, samples: Sequence[str]
    ) -> ExpressionDataset:
        if not samples:
            return dataset
        logger.info(f"Excluding {len(samples)} samples: {', '.join(samples)}")
        return dataset.drop_samples(samples)

    def run_expression_filter(
        self, dataset: ExpressionDataset
    ) -> Tuple[ExpressionDataset, ExpressedGeneSet]:
        params = self.config.expression_filter
        classifier = ExpressedGeneClassifier(
            seed=self.config.random_seed,
            n_components=params.get("n_components", 2),
            min_component_fraction=params.get("min_component_fraction", 0.01),
            min_separation=params.get("min_separation", 2.0),
            max_iter=params.get("max_iter", 500),
        )
        return classifier.filter_dataset(dataset)

    def run_normalization(self, dataset: ExpressionDataset, design: Design) -> NormalizedMatrix:
        normalizer = Normalizer(
            min_dispersion=self.config.normalization.get("min_dispersion", 1e-8),
            n_jobs=self.config.n_jobs,
        )
        return normalizer.transform(dataset, design)

    def run_quality_control(
        self, normalized: NormalizedMatrix, dataset: ExpressionDataset
    ) -> Dict[str, Any]:
        """HVG selection, PCA and covariate correlation diagnostics"""
        params = self.config.quality_control

        hvg = HighVarianceGeneSelector(params.get("n_hvg", 500)).select(normalized)
        pca = PCAProjector(params.get("n_components", 10)).project(normalized, hvg)

        correlations = pca.correlate_covariates(dataset.samples)
        threshold = params.get("confound_threshold", 0.7)
        alpha = params.get("confound_alpha", 0.05)
        confounded = filter_confounded(correlations, threshold, alpha)

        for _, row in confounded.iterrows():
            logger.warning(
                f"{row['component']} correlates with {row['covariate']} "
                f"({row['kind']}, {row['correlation']:.2f}, p={row['pvalue']:.2g})"
            )

        return {
            "hvg": hvg,
            "pca": pca,
            "covariate_correlations": correlations,
            "confounded": confounded,
        }

    def run_differential_expression(
        self, dataset: ExpressionDataset, design: Design
    ) -> DifferentialExpressionResult:
        params = self.config.differential
        engine = DifferentialExpressionEngine(
            alpha=params.get("alpha", 0.1),
            min_dispersion=params.get("min_dispersion", 1e-8),
            outlier_sd=params.get("outlier_sd", 2.0),
            prior_variance_floor=params.get("prior_variance_floor", 0.25),
            n_jobs=self.config.n_jobs,
        )
        return engine.run(dataset, design)

    def run_gene_lists(self, differential: DifferentialExpressionResult) -> Dict[str, GeneList]:
        gene_lists = {}
        for params in self.config.gene_lists:
            config = ThresholdConfig.from_dict(params)
            if config.name in gene_lists:
                raise InputValidationError(f"Duplicate gene list name: {config.name}", field="gene_lists")
            gene_list = differential.gene_list(config)
            gene_lists[config.name] = gene_list
            logger.info(
                f"Gene list {config.name} ({config.describe()}): {len(gene_list)} genes "
                f"({gene_list.n_up} up, {gene_list.n_down} down)"
            )
        return gene_lists

    def run_enrichment(self, gene_lists: Dict[str, GeneList]) -> Dict[str, EnrichmentResult]:
        params = self.config.enrichment
        engine = EnrichmentEngine(
            backend=self.build_enrichment_backend(),
            databases=params.get("databases", []),
            cutoff=params.get("cutoff", 0.1),
            max_workers=params.get("max_workers", 4),
            max_attempts=params.get("max_attempts", 3),
            backoff_seconds=params.get("backoff_seconds", 1.0),
        )
        return engine.run_batch(list(gene_lists.values()))

    def _log_pipeline_summary(self, result: PipelineResult) -> None:
        logger.info("=" * 50)
        logger.info("NEURODIFF PIPELINE SUMMARY")
        logger.info("=" * 50)
        for line in result.summary_text().splitlines()[3:]:
            if line:
                logger.info(line)

    def save_results(self, result: PipelineResult, output_dir: Union[str, Path]) -> Dict[str, Path]:
        """Export result tables and the pipeline summary to ``output_dir``"""
        return export_results(result, output_dir)

    def get_execution_times(self) -> Dict[str, float]:
        """Get execution times for all steps"""
        return self.execution_times
