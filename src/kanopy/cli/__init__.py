"""
CLI layer for kanopy.

Entry point::

    kanopy --help
"""

from kanopy.cli.app import app

__all__ = ["app"]
