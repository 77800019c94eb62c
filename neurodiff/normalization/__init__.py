"""
Count normalization
"""

from .vst import NormalizedMatrix, Normalizer, vst_transform

__all__ = ["Normalizer", "NormalizedMatrix", "vst_transform"]
