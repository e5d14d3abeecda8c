# src/vine_award/__init__.py
"""Vine Award: daily check-in awards coordinated over an append-only feed."""

__version__ = "0.1.0"
