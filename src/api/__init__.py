"""
HTTP surface for the claims engine.
"""

from .app import create_app

__all__ = ["create_app"]
