"""
Expression dataset containers, statistical design and loading
"""

from .loader import load_expression_dataset
from .models import SYMBOL_COLUMN, Design, ExpressionDataset

__all__ = [
    "ExpressionDataset",
    "Design",
    "SYMBOL_COLUMN",
    "load_expression_dataset",
]
