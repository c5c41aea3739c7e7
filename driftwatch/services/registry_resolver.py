"""Registry resolution and tag candidate selection."""

import logging
import re
from functools import cmp_to_key
from typing import Dict, Iterable, List, Optional

from driftwatch.exceptions import UnsupportedRegistryError
from driftwatch.schemas.container import Container, ContainerImage, full_name, validate
from driftwatch.services.registries.base import RegistryProvider
from driftwatch.utils.version import is_greater
from driftwatch.utils.version import parse as parse_semver
from driftwatch.utils.version import transform as transform_tag

logger = logging.getLogger(__name__)

UNKNOWN_REGISTRY = "unknown"


def get_tag_candidates(container: Container, tags: Iterable[str]) -> List[str]:
    """Filter registry tags down to update candidates, best first.

    Include/exclude regexes are applied to the raw tags. For semver images the
    survivors are the tags whose transformed value parses as semver and is
    strictly greater than the transformed current tag, sorted descending.
    Non-semver images never get candidates (only their digest is watched).
    """
    filtered = list(tags)

    if container.include_tags:
        include = re.compile(container.include_tags)
        filtered = [tag for tag in filtered if include.search(tag)]

    if container.exclude_tags:
        exclude = re.compile(container.exclude_tags)
        filtered = [tag for tag in filtered if not exclude.search(tag)]

    if not container.image.tag.semver:
        return []

    if not filtered:
        logger.warning(f"{full_name(container)} - No tags found after filtering; check your regex filters")

    current = transform_tag(container.transform_tags, container.image.tag.value)
    filtered = [
        tag for tag in filtered
        if parse_semver(transform_tag(container.transform_tags, tag)) is not None
        and is_greater(transform_tag(container.transform_tags, tag), current)
    ]

    def _compare(tag1: str, tag2: str) -> int:
        version1 = parse_semver(transform_tag(container.transform_tags, tag1))
        version2 = parse_semver(transform_tag(container.transform_tags, tag2))
        return version2.compare(version1)

    return sorted(filtered, key=cmp_to_key(_compare))


class RegistryResolver:
    """Registered registry providers, keyed by registry id."""

    def __init__(self, registries: Optional[Iterable[RegistryProvider]] = None) -> None:
        self._registries: Dict[str, RegistryProvider] = {}
        for registry in registries or []:
            self.register(registry)

    def register(self, registry: RegistryProvider) -> None:
        if registry.id in self._registries:
            logger.info(f"Registry {registry.id} reconfigured")
        self._registries[registry.id] = registry

    def unregister(self, registry_id: str) -> Optional[RegistryProvider]:
        return self._registries.pop(registry_id, None)

    @property
    def registries(self) -> Dict[str, RegistryProvider]:
        return dict(self._registries)

    def resolve_provider(self, image: ContainerImage) -> Optional[RegistryProvider]:
        """First registered provider whose ``match`` accepts the image."""
        for registry in self._registries.values():
            if registry.match(image):
                return registry
        return None

    def get_registry(self, name: str) -> RegistryProvider:
        """Get a registry by id.

        Raises:
            UnsupportedRegistryError: If no registry has this id
        """
        registry = self._registries.get(name)
        if registry is None:
            raise UnsupportedRegistryError(f"Unsupported Registry {name}")
        return registry

    def normalize_container(self, container: Container) -> Container:
        """Normalize the container image through its registry provider.

        Containers served by no provider get registry name ``unknown`` and are
        not checked for updates.
        """
        provider = self.resolve_provider(container.image)
        normalized = container.model_copy(deep=True)
        if provider is None:
            logger.warning(f"{full_name(container)} - No Registry Provider found")
            normalized.image.registry.name = UNKNOWN_REGISTRY
        else:
            normalized.image = provider.normalize_image(container.image)
        return validate(normalized)

    async def close(self) -> None:
        for registry in self._registries.values():
            await registry.close()
