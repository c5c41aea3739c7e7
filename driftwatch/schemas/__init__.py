"""Pydantic schemas."""

from driftwatch.schemas.container import (
    Container,
    ContainerError,
    ContainerImage,
    ContainerNotification,
    ContainerResult,
    ImageDigest,
    ImageRegistry,
    ImageTag,
    UpdateKind,
)
from driftwatch.schemas.report import ContainerReport

__all__ = [
    "Container",
    "ContainerError",
    "ContainerImage",
    "ContainerNotification",
    "ContainerReport",
    "ContainerResult",
    "ImageDigest",
    "ImageRegistry",
    "ImageTag",
    "UpdateKind",
]
