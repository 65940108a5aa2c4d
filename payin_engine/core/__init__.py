"""Core utilities for configuration, logging and Firestore access."""

from .config import (
    AppSettings,
    BreakerSettings,
    EngineSettings,
    MonitoringSettings,
    ScoringWeights,
    SelectionSettings,
    load_settings,
)
from .logging_config import get_logger, setup_logging

__all__ = [
    "AppSettings",
    "BreakerSettings",
    "EngineSettings",
    "MonitoringSettings",
    "ScoringWeights",
    "SelectionSettings",
    "load_settings",
    "get_logger",
    "setup_logging",
]
