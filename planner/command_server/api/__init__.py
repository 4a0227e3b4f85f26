"""
HTTP transport for the planner command server.
"""

from .http_app import create_app
from .settings import Settings

__all__ = ["Settings", "create_app"]
