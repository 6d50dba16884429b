"""
API package for the dispatch coordination core.
"""

from .main import app, create_app

__all__ = ["app", "create_app"]
