"""Gitea / Forgejo package registry."""

from driftwatch.services.registries.base import CustomRegistry


class GiteaRegistry(CustomRegistry):
    """Same protocol as a custom registry; matched on the configured host."""

    provider = "gitea"
