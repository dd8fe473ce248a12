"""changeflow: dependency-aware orchestration of AI-assisted change requests."""

__version__ = "0.1.0"
