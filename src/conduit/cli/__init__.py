"""
CLI layer for conduit.

Terminal transport only: argument parsing, coloured output and
tables. Every command delegates to the runtime or the model layer.

Entry point::

    conduit --help
"""

from conduit.cli.app import app

__all__ = ["app"]
