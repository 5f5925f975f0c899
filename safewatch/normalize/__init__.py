"""
Payload normalization for SafeWatch ingestion.
"""

from .normalizer import UpdateNormalizer

__all__ = ["UpdateNormalizer"]
