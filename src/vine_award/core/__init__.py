# src/vine_award/core/__init__.py
"""Core configuration and error types."""
