"""Command line interface for Repolens."""

from .main import cli

__all__ = ["cli"]
