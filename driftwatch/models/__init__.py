"""Database models."""

from driftwatch.models.app_state import AppState
from driftwatch.models.container import ContainerDocument

__all__ = ["AppState", "ContainerDocument"]
