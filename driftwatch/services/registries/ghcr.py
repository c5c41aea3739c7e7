"""GitHub Container Registry (and LinuxServer's lscr.io mirror of it)."""

import logging
from typing import Dict, Optional

from pydantic import model_validator

from driftwatch.schemas.container import ContainerImage
from driftwatch.services.registries.base import RegistryConfiguration, RegistryProvider, host_of

logger = logging.getLogger(__name__)


class GhcrConfiguration(RegistryConfiguration):
    username: Optional[str] = None
    token: Optional[str] = None

    @model_validator(mode="after")
    def _check_pair(self) -> "GhcrConfiguration":
        if self.username and not self.token:
            raise ValueError("token is required when username is set")
        return self


class GhcrRegistry(RegistryProvider):
    """ghcr.io; requires Basic auth for the token request, then Bearer for API calls."""

    provider = "ghcr"
    configuration_model = GhcrConfiguration

    DOMAIN = "ghcr.io"
    REGISTRY_URL = "https://ghcr.io/v2"
    TOKEN_URL = "https://ghcr.io/token"

    def match(self, image: ContainerImage) -> bool:
        return host_of(image.registry.url) == self.DOMAIN

    def normalize_image(self, image: ContainerImage) -> ContainerImage:
        normalized = image.model_copy(deep=True)
        normalized.registry.name = self.id
        normalized.registry.url = self.REGISTRY_URL
        return normalized

    def get_basic_auth(self) -> Optional[tuple]:
        if self.configuration.username and self.configuration.token:
            return (self.configuration.username, self.configuration.token)
        return None

    async def authenticate(self, image: ContainerImage, headers: Dict[str, str]) -> Dict[str, str]:
        """Get a pull-scoped bearer token (anonymous when no credentials)."""
        response = await self._request_with_retry(
            "GET",
            self.TOKEN_URL,
            params={"scope": f"repository:{image.name}:pull", "service": "ghcr.io"},
            auth=self.get_basic_auth(),
        )
        token = response.json().get("token")
        if token:
            headers["Authorization"] = f"Bearer {token}"
        else:
            logger.warning(f"{self.id} - No token returned for {image.name}")
        return headers


class LscrRegistry(GhcrRegistry):
    """lscr.io images are served by ghcr.io under the same path."""

    provider = "lscr"
    DOMAIN = "lscr.io"
