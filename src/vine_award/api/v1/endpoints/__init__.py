# src/vine_award/api/v1/endpoints/__init__.py
"""API endpoint modules for version 1."""

from .awards import router as awards_router
from .system import router as system_router

__all__ = [
    "awards_router",
    "system_router",
]
