"""
Local package for the LMDesk supervisor.

This package provides the effective runtime configuration through the
app_globals singleton and hosts the supervisor subpackage.
"""

from .config import effective_settings as app_globals

__all__ = ["app_globals"]
