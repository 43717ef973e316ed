"""Command line interface (rich-click)."""

from webrepl.frontends.cli.main import cli, main

__all__ = ["cli", "main"]
