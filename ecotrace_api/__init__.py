"""
Top-level package for the EcoTrace API.

Makes ``ecotrace_api`` importable so that modules under ``app`` can be
referenced with fully qualified names like ``ecotrace_api.app.main``.
The package has no public exports; everything lives in ``app``.
"""

__all__ = []
