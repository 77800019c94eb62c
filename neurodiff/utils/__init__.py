"""
Utility functions and classes for neurodiff
"""

from .logging import get_logger, log_execution_time, setup_logging
from .parallel import run_parallel
from .validation import (validate_environment, validate_file_exists,
                         validate_output_permissions, validate_python_packages)

__all__ = [
    "setup_logging",
    "get_logger",
    "log_execution_time",
    "run_parallel",
    "validate_file_exists",
    "validate_environment",
    "validate_output_permissions",
    "validate_python_packages",
]
