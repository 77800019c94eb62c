"""
Validation utilities for neurodiff
"""

import importlib
import logging
import sys
from pathlib import Path
from typing import Dict, List, Union

logger = logging.getLogger(__name__)

CORE_PACKAGES = [
    "numpy",
    "pandas",
    "scipy",
    "statsmodels",
    "sklearn",
    "joblib",
    "requests",
    "yaml",
    "click",
    "colorlog",
]


def validate_file_exists(file_path: Union[str, Path], file_type: str = "file") -> bool:
    """
    Validate that a file exists

    Args:
        file_path: Path to file
        file_type: Type description for error messages

    Returns:
        True if file exists, False otherwise
    """
    path = Path(file_path)

    if not path.exists():
        logger.error(f"{file_type} not found: {path}")
        return False

    if not path.is_file():
        logger.error(f"{file_type} is not a file: {path}")
        return False

    return True


def validate_python_packages(packages: List[str]) -> Dict[str, bool]:
    """
    Check if Python packages are importable

    Args:
        packages: List of import names

    Returns:
        Dictionary mapping package names to availability status
    """
    results = {}

    for package in packages:
        try:
            importlib.import_module(package)
            results[package] = True
            logger.debug(f"Package {package}: available")
        except ImportError:
            results[package] = False
            logger.debug(f"Package {package}: not available")

    return results


def validate_environment() -> List[str]:
    """
    Environment validation

    Returns:
        List of validation issues found
    """
    issues = []

    logger.info("Validating neurodiff environment...")

    if sys.version_info < (3, 8):
        issues.append(
            f"Python 3.8+ required, found {sys.version_info.major}.{sys.version_info.minor}"
        )

    package_status = validate_python_packages(CORE_PACKAGES)
    missing_packages = [
        pkg for pkg, available in package_status.items() if not available
    ]

    if missing_packages:
        issues.append(f"Missing Python packages: {', '.join(missing_packages)}")

    if issues:
        logger.warning(f"Environment validation found {len(issues)} issues")
        for issue in issues:
            logger.warning(f"  - {issue}")
    else:
        logger.info("Environment validation passed")

    return issues


def validate_output_permissions(output_dir: Union[str, Path]) -> bool:
    """
    Check if output directory is writable

    Args:
        output_dir: Output directory path

    Returns:
        True if writable, False otherwise
    """
    try:
        output_path = Path(output_dir)
        output_path.mkdir(parents=True, exist_ok=True)

        test_file = output_path / ".write_test"
        test_file.write_text("test")
        test_file.unlink()

        return True

    except OSError as e:
        logger.error(f"Output directory not writable: {e}")
        return False
