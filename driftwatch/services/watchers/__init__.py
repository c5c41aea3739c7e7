"""Container engine watchers."""

from driftwatch.services.watchers.docker import DockerWatcher

WATCHER_PROVIDERS = {
    "docker": DockerWatcher,
}

__all__ = ["WATCHER_PROVIDERS", "DockerWatcher"]
