"""Container report emitted after each watch."""

from dataclasses import dataclass

from driftwatch.schemas.container import Container


@dataclass
class ContainerReport:
    """A watched container and whether its remote result changed.

    ``changed`` is True when the container was stored for the first time, or
    when its result differs from the previously stored one and an update is
    available.
    """

    container: Container
    changed: bool = False
