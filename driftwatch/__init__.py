"""Driftwatch - container image update watcher."""
