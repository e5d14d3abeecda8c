# src/vine_award/schemas/__init__.py
"""Pydantic schemas for the Vine Award API."""
