# src/vine_award/api/__init__.py
"""HTTP API for the Vine Award service."""
