"""Role-based store rating service."""

from .api import app

__all__ = ["app"]
