"""Workflow engine: dependency resolution, scheduling, session state and the phase pipeline."""
