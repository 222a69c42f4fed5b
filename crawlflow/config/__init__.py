"""Configuration package exports."""

from .loader import CONFIG_EXTENSIONS, ConfigLocator, ConfigRepository
from .models import EngineSettings, OutputFormat, RunConfig, StageSpec

__all__ = [
    "CONFIG_EXTENSIONS",
    "ConfigLocator",
    "ConfigRepository",
    "EngineSettings",
    "OutputFormat",
    "RunConfig",
    "StageSpec",
]
