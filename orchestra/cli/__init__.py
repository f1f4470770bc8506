"""Command line interface."""

from orchestra.cli.main import app
from orchestra.cli import commands  # noqa: F401  registers extra commands

__all__ = ["app"]
