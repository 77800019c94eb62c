"""
Core configuration management for neurodiff
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from ..dataset.models import Design
from ..differential.gene_lists import DEFAULT_THRESHOLDS
from ..exceptions import InputValidationError

logger = logging.getLogger(__name__)


@dataclass
class Config:
    """Main configuration class for a neurodiff analysis"""

    # General settings
    project_name: str = "neurodiff_analysis"
    random_seed: int = 42
    n_jobs: int = 1

    # Input/Output paths
    input_dir: Optional[str] = None
    output_dir: Optional[str] = None

    # Samples dropped before any statistics (manual QC decision)
    exclude_samples: List[str] = field(default_factory=list)

    # Analysis parameters
    expression_filter: Dict[str, Any] = field(default_factory=dict)
    design: Dict[str, Any] = field(default_factory=dict)
    normalization: Dict[str, Any] = field(default_factory=dict)
    quality_control: Dict[str, Any] = field(default_factory=dict)
    differential: Dict[str, Any] = field(default_factory=dict)
    gene_lists: List[Dict[str, Any]] = field(default_factory=list)
    enrichment: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        """Initialize default configurations"""
        if not self.expression_filter:
            self.expression_filter = self._get_default_expression_filter()
        if not self.design:
            self.design = self._get_default_design()
        if not self.normalization:
            self.normalization = self._get_default_normalization()
        if not self.quality_control:
            self.quality_control = self._get_default_quality_control()
        if not self.differential:
            self.differential = self._get_default_differential()
        if not self.gene_lists:
            self.gene_lists = self._get_default_gene_lists()
        if not self.enrichment:
            self.enrichment = self._get_default_enrichment()

    def _get_default_expression_filter(self) -> Dict[str, Any]:
        """Default expressed-gene mixture model configuration"""
        return {
            "n_components": 2,
            "min_component_fraction": 0.01,
            "min_separation": 2.0,
            "max_iter": 500,
        }

    def _get_default_design(self) -> Dict[str, Any]:
        """Default statistical design (reference level must be set by the user)"""
        return {
            "group_column": "group",
            "reference_level": None,
            "test_level": None,
            "covariates": [],
        }

    def _get_default_normalization(self) -> Dict[str, Any]:
        """Default variance-stabilizing transform configuration"""
        return {
            "min_dispersion": 1e-8,
        }

    def _get_default_quality_control(self) -> Dict[str, Any]:
        """Default HVG/PCA diagnostic configuration"""
        return {
            "n_hvg": 500,
            "n_components": 10,
            "confound_threshold": 0.7,
            "confound_alpha": 0.05,
        }

    def _get_default_differential(self) -> Dict[str, Any]:
        """Default differential expression configuration"""
        return {
            "alpha": 0.1,
            "min_dispersion": 1e-8,
            "outlier_sd": 2.0,
            "prior_variance_floor": 0.25,
        }

    def _get_default_gene_lists(self) -> List[Dict[str, Any]]:
        """Default gene-list threshold configurations"""
        return [threshold.to_dict() for threshold in DEFAULT_THRESHOLDS]

    def _get_default_enrichment(self) -> Dict[str, Any]:
        """Default enrichment analysis configuration"""
        return {
            "backend": "enrichr",
            "databases": [
                "GO_Biological_Process_2023",
                "GO_Cellular_Component_2023",
                "GO_Molecular_Function_2023",
                "KEGG_2019_Mouse",
            ],
            "gmt_files": {},
            "cutoff": 0.1,
            "max_workers": 4,
            "max_attempts": 3,
            "backoff_seconds": 1.0,
            "enrichr_url": "https://maayanlab.cloud/Enrichr",
            "timeout": 30,
            "min_request_interval": 0.5,
        }

    def build_design(self) -> Design:
        """Build the statistical Design from the ``design`` section"""
        design_params = self.design

        if not design_params.get("reference_level"):
            raise InputValidationError(
                "Design reference level must be set explicitly",
                field="design.reference_level",
            )

        return Design(
            group_column=design_params.get("group_column", "group"),
            reference_level=str(design_params["reference_level"]),
            test_level=(
                str(design_params["test_level"])
                if design_params.get("test_level")
                else None
            ),
            covariates=tuple(design_params.get("covariates") or ()),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to a plain dictionary"""
        return asdict(self)


def load_config(config_file: Union[str, Path]) -> Config:
    """Load configuration from YAML or JSON file"""
    config_path = Path(config_file)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    logger.info(f"Loading configuration from {config_path}")

    with open(config_path, "r") as f:
        if config_path.suffix.lower() in [".yaml", ".yml"]:
            config_dict = yaml.safe_load(f)
        elif config_path.suffix.lower() == ".json":
            config_dict = json.load(f)
        else:
            raise ValueError(f"Unsupported config file format: {config_path.suffix}")

    return Config(**(config_dict or {}))


def save_config(config: Config, output_file: Union[str, Path]) -> None:
    """Save configuration to a YAML or JSON file"""
    output_path = Path(output_file)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    config_dict = config.to_dict()

    with open(output_path, "w") as f:
        if output_path.suffix.lower() == ".json":
            json.dump(config_dict, f, indent=2)
        else:
            yaml.dump(config_dict, f, default_flow_style=False, indent=2, sort_keys=False)

    logger.info(f"Configuration saved to {output_path}")


def validate_config(config: Config) -> List[str]:
    """Validate configuration and return list of issues"""
    issues = []

    if config.input_dir and not Path(config.input_dir).exists():
        issues.append(f"Input directory does not exist: {config.input_dir}")

    if config.n_jobs == 0:
        issues.append("n_jobs must be non-zero")

    if not config.design.get("reference_level"):
        issues.append("design.reference_level must be set explicitly")

    if config.expression_filter.get("n_components", 2) != 2:
        issues.append("expression_filter.n_components must be exactly 2")

    if config.quality_control.get("n_hvg", 500) <= 0:
        issues.append("quality_control.n_hvg must be positive")

    alpha = config.differential.get("alpha", 0.1)
    if not 0 < alpha < 1:
        issues.append("differential.alpha must be between 0 and 1")

    names = set()
    for gene_list in config.gene_lists:
        if not all(
            k in gene_list
            for k in ["name", "log2fc_threshold", "significance_threshold"]
        ):
            issues.append(
                "Each gene list must have 'name', 'log2fc_threshold' and "
                "'significance_threshold'"
            )
            continue
        if gene_list["name"] in names:
            issues.append(f"Duplicate gene list name: {gene_list['name']}")
        names.add(gene_list["name"])
        if gene_list.get("significance_column", "padj") not in ("padj", "pvalue"):
            issues.append(
                f"Gene list {gene_list['name']}: significance_column must be "
                "'padj' or 'pvalue'"
            )

    backend = config.enrichment.get("backend", "enrichr")
    if backend not in ("enrichr", "local"):
        issues.append(f"Unknown enrichment backend: {backend}")
    elif backend == "local":
        gmt_files = config.enrichment.get("gmt_files", {})
        for database in config.enrichment.get("databases", []):
            if database not in gmt_files:
                issues.append(f"No GMT file configured for database {database}")

    if config.enrichment.get("max_attempts", 3) < 1:
        issues.append("enrichment.max_attempts must be at least 1")

    return issues


def get_default_config() -> Config:
    """Get default configuration object"""
    return Config()
