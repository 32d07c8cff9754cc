"""
HTTP surface for kanopy: liveness, Prometheus metrics, ActionSet status.

Quick start::

    from kanopy.api import create_app

    app = create_app()  # ready for uvicorn
"""

from kanopy.api.app import create_app

__all__ = ["create_app"]
