"""HTTP API module."""

from .router import router

__all__ = ["router"]
