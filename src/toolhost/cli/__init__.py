"""
toolhost CLI - inspect and exercise configured tool servers from a shell.
"""

from .main import cli, run

__all__ = ["cli", "run"]
