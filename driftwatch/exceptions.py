"""Custom exceptions for driftwatch."""

from typing import Iterable, Optional


class DriftwatchError(Exception):
    """Base class for all driftwatch errors."""
    pass


class ContainerValidationError(DriftwatchError):
    """Raised when a container document does not match the container schema.

    Writes to the container store are rejected as a whole; nothing is
    partially applied or silently coerced.
    """
    pass


class ConfigurationError(DriftwatchError):
    """Raised when a registry, watcher or trigger configuration is invalid."""
    pass


class UnknownProviderError(ConfigurationError):
    """Raised when no component class is registered for (kind, provider)."""

    def __init__(self, kind: str, provider: str, available: Iterable[str]):
        self.kind = kind
        self.provider = provider
        self.available = sorted(available)
        message = f"Unknown {kind} provider: '{provider}'"
        if self.available:
            message += f" (available {kind} providers: {', '.join(self.available)})"
        super().__init__(message)


class UnsupportedRegistryError(DriftwatchError):
    """Raised when a container references a registry that is not registered."""
    pass


class RegistryError(DriftwatchError):
    """Raised when a registry answers with unusable data."""
    pass


class InstallError(DriftwatchError):
    """Base class for install dispatch errors."""
    pass


class InstallNotEnabledError(InstallError):
    """Raised when no trigger has the install flag enabled."""
    pass


class AmbiguousInstallError(InstallError):
    """Raised when more than one trigger has the install flag enabled."""
    pass


class InstallNotSupportedError(InstallError):
    """Raised when the install trigger cannot perform installs (batch mode)."""
    pass


class ContainerNotFoundError(InstallError):
    """Raised when the container to install is not in the store."""

    def __init__(self, container_id: str):
        self.container_id = container_id
        super().__init__(f"Container {container_id} not found")


class ScriptExecutionError(DriftwatchError):
    """Raised when an install script exits non-zero or is killed by a signal."""

    def __init__(self, message: str, exit_code: Optional[int] = None):
        self.exit_code = exit_code
        super().__init__(message)


class OrchestrationTimeoutError(DriftwatchError):
    """Base class for install orchestration phase timeouts."""

    phase = "orchestration"

    def __init__(self, timeout: float, detail: str = ""):
        self.timeout = timeout
        message = f"Timed out after {timeout:g}s while {self.phase}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)


class ScriptTimeoutError(OrchestrationTimeoutError):
    """The install script did not finish in time."""

    phase = "running the install script"


class ImageUpdateTimeoutError(OrchestrationTimeoutError):
    """The engine never reported a running container with a new image."""

    phase = "waiting for the container image to change"


class WatcherRescanTimeoutError(OrchestrationTimeoutError):
    """The watcher did not finish the forced rescan in time."""

    phase = "waiting for the watcher to rescan"
