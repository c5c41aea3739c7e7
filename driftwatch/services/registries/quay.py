"""Quay.io registry."""

import base64
import logging
from typing import Dict, Optional

from pydantic import model_validator

from driftwatch.schemas.container import ContainerImage
from driftwatch.services.registries.base import RegistryConfiguration, RegistryProvider, host_of

logger = logging.getLogger(__name__)


class QuayConfiguration(RegistryConfiguration):
    """Robot account credentials (all three or none)."""

    namespace: Optional[str] = None
    account: Optional[str] = None
    token: Optional[str] = None

    @model_validator(mode="after")
    def _check_robot(self) -> "QuayConfiguration":
        provided = [bool(self.namespace), bool(self.account), bool(self.token)]
        if any(provided) and not all(provided):
            raise ValueError("namespace, account and token must be provided together")
        return self


class QuayRegistry(RegistryProvider):
    provider = "quay"
    configuration_model = QuayConfiguration

    REGISTRY_URL = "https://quay.io/v2"
    TOKEN_URL = "https://quay.io/v2/auth"

    def match(self, image: ContainerImage) -> bool:
        return host_of(image.registry.url) == "quay.io"

    def normalize_image(self, image: ContainerImage) -> ContainerImage:
        normalized = image.model_copy(deep=True)
        normalized.registry.name = self.id
        normalized.registry.url = self.REGISTRY_URL
        return normalized

    def get_auth_credentials(self) -> Optional[str]:
        if not self.configuration.token:
            return None
        robot = f"{self.configuration.namespace}+{self.configuration.account}"
        return base64.b64encode(f"{robot}:{self.configuration.token}".encode()).decode()

    async def authenticate(self, image: ContainerImage, headers: Dict[str, str]) -> Dict[str, str]:
        credentials = self.get_auth_credentials()
        if not credentials:
            return headers

        response = await self._request_with_retry(
            "GET",
            self.TOKEN_URL,
            params={"service": "quay.io", "scope": f"repository:{image.name}:pull"},
            headers={"Accept": "application/json", "Authorization": f"Basic {credentials}"},
        )
        headers["Authorization"] = f"Bearer {response.json().get('token')}"
        return headers
