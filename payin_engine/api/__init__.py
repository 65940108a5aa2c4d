"""HTTP layer for the payin routing engine."""

from .router import build_router

__all__ = ["build_router"]
