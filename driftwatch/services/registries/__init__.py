"""Registry providers."""

from driftwatch.services.registries.base import (
    CustomRegistry,
    ManifestDigest,
    RegistryProvider,
)
from driftwatch.services.registries.gcr import GcrRegistry
from driftwatch.services.registries.ghcr import GhcrRegistry, LscrRegistry
from driftwatch.services.registries.gitea import GiteaRegistry
from driftwatch.services.registries.hub import HubRegistry
from driftwatch.services.registries.quay import QuayRegistry

REGISTRY_PROVIDERS = {
    "custom": CustomRegistry,
    "gcr": GcrRegistry,
    "ghcr": GhcrRegistry,
    "gitea": GiteaRegistry,
    "hub": HubRegistry,
    "lscr": LscrRegistry,
    "quay": QuayRegistry,
}

__all__ = [
    "REGISTRY_PROVIDERS",
    "CustomRegistry",
    "GcrRegistry",
    "GhcrRegistry",
    "GiteaRegistry",
    "HubRegistry",
    "LscrRegistry",
    "ManifestDigest",
    "QuayRegistry",
    "RegistryProvider",
]
