"""
HTTP API for SafeWatch.
"""

from .routes import create_router, install_error_handlers

__all__ = ["create_router", "install_error_handlers"]
