"""Google Container Registry."""

import base64
import json
import logging
import re
from typing import Dict, Optional

from pydantic import model_validator

from driftwatch.schemas.container import ContainerImage
from driftwatch.services.registries.base import RegistryConfiguration, RegistryProvider, host_of

logger = logging.getLogger(__name__)

_GCR_HOST_RE = re.compile(r"^(?:[a-z0-9-]+\.)?gcr\.io$")


class GcrConfiguration(RegistryConfiguration):
    """Service account credentials (both or none)."""

    clientemail: Optional[str] = None
    privatekey: Optional[str] = None

    @model_validator(mode="after")
    def _check_pair(self) -> "GcrConfiguration":
        if bool(self.clientemail) != bool(self.privatekey):
            raise ValueError("clientemail and privatekey must be provided together")
        return self


class GcrRegistry(RegistryProvider):
    provider = "gcr"
    configuration_model = GcrConfiguration

    TOKEN_URL = "https://gcr.io/v2/token"

    def match(self, image: ContainerImage) -> bool:
        return bool(_GCR_HOST_RE.match(host_of(image.registry.url)))

    def normalize_image(self, image: ContainerImage) -> ContainerImage:
        normalized = image.model_copy(deep=True)
        normalized.registry.name = self.id
        normalized.registry.url = f"https://{host_of(image.registry.url)}/v2"
        return normalized

    async def authenticate(self, image: ContainerImage, headers: Dict[str, str]) -> Dict[str, str]:
        if not self.configuration.clientemail:
            return headers

        json_key = json.dumps(
            {
                "client_email": self.configuration.clientemail,
                "private_key": self.configuration.privatekey,
            }
        )
        credentials = base64.b64encode(f"_json_key:{json_key}".encode()).decode()
        response = await self._request_with_retry(
            "GET",
            self.TOKEN_URL,
            params={"scope": f"repository:{image.name}:pull"},
            headers={"Accept": "application/json", "Authorization": f"Basic {credentials}"},
        )
        headers["Authorization"] = f"Bearer {response.json().get('token')}"
        return headers
