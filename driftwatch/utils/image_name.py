"""Docker image reference parsing."""

from dataclasses import dataclass
from typing import Optional


@dataclass
class ImageReference:
    """Components of an image reference like ``ghcr.io/org/app:1.2.3``."""

    domain: Optional[str]
    path: str
    tag: Optional[str] = None
    digest: Optional[str] = None


def parse_image_name(reference: str) -> ImageReference:
    """Split an image reference into domain, path, tag and digest.

    The first path component is treated as a registry domain only when it
    looks like a host (contains "." or ":" or is "localhost"), so
    ``nginx:1.25`` has no domain while ``registry:5000/app`` does.

    Args:
        reference: Image reference as reported by the engine

    Returns:
        ImageReference
    """
    remainder = reference.strip()
    digest = None
    if "@" in remainder:
        remainder, digest = remainder.split("@", 1)

    tag = None
    last_slash = remainder.rfind("/")
    last_colon = remainder.rfind(":")
    if last_colon > last_slash:
        remainder, tag = remainder[:last_colon], remainder[last_colon + 1:]

    domain = None
    if "/" in remainder:
        first, rest = remainder.split("/", 1)
        if "." in first or ":" in first or first == "localhost":
            domain, remainder = first, rest

    return ImageReference(domain=domain, path=remainder, tag=tag or None, digest=digest)
