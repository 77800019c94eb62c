"""
neurodiff: differential expression and enrichment for neuron populations

neurodiff is a Python package for comparing RNA-seq profiles of two neuron
populations. It takes a raw count matrix with sample and gene metadata to a
ranked list of differentially expressed genes and the biological pathways
they implicate.

Main Components:
- Expressed gene classification with a two-component Gaussian mixture
- Design-aware variance-stabilizing normalization
- High-variance gene selection and PCA diagnostics
- Negative binomial GLM differential expression with shrunken dispersions
- Threshold-based gene lists and over-representation analysis (Enrichr or GMT)

Example:
    >>> from neurodiff import NeuroDiffAnalysis, load_expression_dataset
    >>> analysis = NeuroDiffAnalysis("config.yaml")
    >>> result = analysis.run(load_expression_dataset("data/"))
"""

import logging
import sys
from importlib import metadata
from typing import Any, Dict

try:
    __version__ = metadata.version("neurodiff")
except metadata.PackageNotFoundError:
    __version__ = "0.1.0-dev"

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stdout,
)

# Module imports
from . import (dataset, differential, enrichment, expression, normalization,
               quality_control, utils)
from .config import Config, load_config
# Main imports
from .core import NeuroDiffAnalysis, PipelineResult
from .dataset import Design, ExpressionDataset, load_expression_dataset
from .exceptions import (EnrichmentServiceError, InputValidationError,
                         ModelFitError, NeuroDiffError, PipelineError)
from .export import export_results, format_for_display
from .utils import setup_logging, validate_environment

__all__ = [
    "__version__",
    "NeuroDiffAnalysis",
    "PipelineResult",
    "Config",
    "load_config",
    "setup_logging",
    "validate_environment",
    "Design",
    "ExpressionDataset",
    "load_expression_dataset",
    "export_results",
    "format_for_display",
    "NeuroDiffError",
    "InputValidationError",
    "ModelFitError",
    "EnrichmentServiceError",
    "PipelineError",
    "dataset",
    "expression",
    "normalization",
    "quality_control",
    "differential",
    "enrichment",
    "utils",
]

MODULES = [
    "dataset",
    "expression",
    "normalization",
    "quality_control",
    "differential",
    "enrichment",
    "utils",
]


def get_info() -> Dict[str, Any]:
    """Get package information."""
    return {
        "name": "neurodiff",
        "version": __version__,
        "description": "RNA-seq differential expression and pathway enrichment for neuron populations",
        "python_version": f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
        "modules": MODULES,
    }


def check_dependencies() -> Dict[str, bool]:
    """Check if key dependencies are available."""
    from .utils.validation import CORE_PACKAGES, validate_python_packages

    return validate_python_packages(CORE_PACKAGES)


# Initialize package
logger = logging.getLogger(__name__)
logger.debug(f"neurodiff v{__version__} initialized")
