"""HTTP API for the bulk merge service."""

from .router import router

__all__ = ["router"]
