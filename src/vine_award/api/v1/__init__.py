# src/vine_award/api/v1/__init__.py
"""Version 1 API endpoints."""

from .endpoints import awards_router, system_router

__all__ = [
    "awards_router",
    "system_router",
]
