"""Configuration loading for changeflow."""

from changeflow.config.settings import OrchestratorSettings

__all__ = ["OrchestratorSettings"]
