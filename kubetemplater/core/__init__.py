"""Core utilities package."""

from .config import Settings, get_settings
from .logging import log_event, setup_logging
from .metrics import ObservabilityContext

__all__ = [
    "Settings",
    "get_settings",
    "setup_logging",
    "log_event",
    "ObservabilityContext",
]
