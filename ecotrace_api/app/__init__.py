"""
Application package initializer.

The API is split into a few layers: ``core`` (configuration, logging,
database, cache and realtime plumbing), ``services`` (carbon
calculation, validation, audit, dashboard aggregation), ``schemas``
(pydantic payloads) and ``api`` (FastAPI routers).
"""

from .main import app  # noqa: F401
