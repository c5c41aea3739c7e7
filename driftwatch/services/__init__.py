"""Driftwatch services."""
