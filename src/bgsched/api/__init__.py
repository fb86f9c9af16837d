# src/bgsched/api/__init__.py
"""
HTTP surface for bgsched (FastAPI).

- app: FastAPI instance + lifespan (scheduler, wake loop)
- routes: registration, cancellation, wake-up and inspection endpoints
- deps: dependency injection helpers
"""

from .app import app

__all__ = ["app"]
