"""
CLI layer for shipline.

Provides a Typer application whose sub-commands delegate to
:mod:`shipline.deploy`. All deployment logic lives there; this package
handles only terminal transport: argument parsing, coloured output and
table formatting.

Entry point::

    shipline --help
"""

from shipline.cli.app import app

__all__ = ["app"]
