"""
Contact directory adapters for SafeWatch.
"""

from .static import StaticContactDirectory
from .http_directory import HttpContactDirectory

__all__ = ["StaticContactDirectory", "HttpContactDirectory"]
