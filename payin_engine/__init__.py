"""Payin routing and circuit-breaker selection engine."""

__version__ = "1.0.0"
