"""Core module - Orchestrator, configuration and exceptions."""

from orchestra.core.config import Settings, get_settings
from orchestra.core.exceptions import OrchestraError
from orchestra.core.orchestrator import Orchestrator

__all__ = [
    "OrchestraError",
    "Orchestrator",
    "Settings",
    "get_settings",
]
