"""
Expressed gene classification
"""

from .classifier import (ExpressedGeneClassifier, ExpressedGeneSet, ashman_d,
                         median_log_expression)

__all__ = [
    "ExpressedGeneClassifier",
    "ExpressedGeneSet",
    "ashman_d",
    "median_log_expression",
]
