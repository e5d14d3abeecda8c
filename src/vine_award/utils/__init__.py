# src/vine_award/utils/__init__.py
"""Utility helpers for the Vine Award service."""

from .retry import BackoffPolicy, retry_async

__all__ = ["BackoffPolicy", "retry_async"]
