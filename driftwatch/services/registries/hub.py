"""Docker Hub registry."""

import logging
from typing import Dict, Optional

from pydantic import model_validator

from driftwatch.schemas.container import ContainerImage
from driftwatch.services.registries.base import BasicAuthConfiguration, RegistryProvider, host_of

logger = logging.getLogger(__name__)


class HubConfiguration(BasicAuthConfiguration):
    token: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _token_as_password(cls, data):
        # An access token replaces the account password
        if isinstance(data, dict) and data.get("token") and not data.get("password"):
            data = {**data, "password": data["token"]}
        return data


class HubRegistry(RegistryProvider):
    """Docker Hub (``docker.io``, also the default for unqualified images)."""

    provider = "hub"
    configuration_model = HubConfiguration

    REGISTRY_URL = "https://registry-1.docker.io/v2"
    TOKEN_URL = "https://auth.docker.io/token"

    def match(self, image: ContainerImage) -> bool:
        host = host_of(image.registry.url)
        return not host or host.endswith("docker.io")

    def normalize_image(self, image: ContainerImage) -> ContainerImage:
        normalized = image.model_copy(deep=True)
        normalized.registry.name = self.id
        normalized.registry.url = self.REGISTRY_URL
        # Official images live under library/
        if "/" not in normalized.name:
            normalized.name = f"library/{normalized.name}"
        return normalized

    async def authenticate(self, image: ContainerImage, headers: Dict[str, str]) -> Dict[str, str]:
        """Exchange (optional) credentials for a pull-scoped bearer token."""
        token_headers = {"Accept": "application/json"}
        credentials = self.get_auth_credentials()
        if credentials:
            token_headers["Authorization"] = f"Basic {credentials}"

        response = await self._request_with_retry(
            "GET",
            self.TOKEN_URL,
            params={
                "service": "registry.docker.io",
                "scope": f"repository:{image.name}:pull",
                "grant_type": "password",
            },
            headers=token_headers,
        )
        token = response.json().get("token")
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers
