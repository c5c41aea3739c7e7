"""Registry providers for resolving image tags and digests.

Every provider speaks the Docker Registry HTTP API v2; variants only differ in
how they recognise an image, normalise its registry URL and authenticate.
"""

import base64
import binascii
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

from driftwatch.exceptions import ConfigurationError, RegistryError
from driftwatch.schemas.container import ContainerImage
from driftwatch.utils.retry import async_retry
from driftwatch.utils.security import mask_fields

logger = logging.getLogger(__name__)

MEDIA_TYPE_MANIFEST_LIST_V2 = "application/vnd.docker.distribution.manifest.list.v2+json"
MEDIA_TYPE_OCI_INDEX = "application/vnd.oci.image.index.v1+json"
MEDIA_TYPE_MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"
MEDIA_TYPE_OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
MEDIA_TYPE_CONTAINER_CONFIG = "application/vnd.docker.container.image.v1+json"
MEDIA_TYPE_OCI_CONFIG = "application/vnd.oci.image.config.v1+json"

MANIFEST_ACCEPT = ", ".join(
    [
        MEDIA_TYPE_MANIFEST_LIST_V2,
        MEDIA_TYPE_OCI_INDEX,
        MEDIA_TYPE_MANIFEST_V2,
        MEDIA_TYPE_OCI_MANIFEST,
    ]
)

_LINK_NEXT_RE = re.compile(r'<([^>]+)>\s*;\s*rel="?next"?')


@dataclass
class ManifestDigest:
    """Digest resolved from a registry manifest.

    ``version`` is 2 for regular manifests (content digest) and 1 for legacy
    manifests (image config identifier, with ``created`` date).
    """

    digest: Optional[str]
    version: int
    created: Optional[str] = None


class RegistryConfiguration(BaseModel):
    """Base registry configuration (anonymous access)."""

    model_config = ConfigDict(extra="forbid")


class BasicAuthConfiguration(RegistryConfiguration):
    """login/password or a base64 ``user:password`` auth string."""

    login: Optional[str] = None
    password: Optional[str] = None
    auth: Optional[str] = None

    @field_validator("auth")
    @classmethod
    def _check_base64(cls, value: Optional[str]) -> Optional[str]:
        if value:
            try:
                base64.b64decode(value, validate=True)
            except (binascii.Error, ValueError) as e:
                raise ValueError("auth must be a valid base64 string") from e
        return value

    @model_validator(mode="after")
    def _check_pairs(self) -> "BasicAuthConfiguration":
        if bool(self.login) != bool(self.password):
            raise ValueError("login and password must be provided together")
        if self.login and self.auth:
            raise ValueError("use either login/password or auth, not both")
        return self


def host_of(url: Optional[str]) -> str:
    """Host (and port) part of a registry URL or domain."""
    if not url:
        return ""
    return re.sub(r"^https?://", "", url).split("/", 1)[0].lower()


class RegistryProvider(ABC):
    """Base class for registry providers.

    Args:
        name: Configuration name (``public`` for anonymous defaults)
        configuration: Raw configuration mapping
        client: Optional shared httpx client
    """

    provider: str = ""
    configuration_model: type[RegistryConfiguration] = RegistryConfiguration
    secret_fields: tuple = ("password", "token", "auth", "privatekey")

    def __init__(
        self,
        name: str = "public",
        configuration: Optional[Dict[str, Any]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.name = name.lower()
        self.configuration = self.validate_configuration(configuration or {})
        self.client = client or httpx.AsyncClient(timeout=30.0, follow_redirects=True)

    @property
    def id(self) -> str:
        """Registry id referenced by ``image.registry.name``."""
        if self.name in ("public", self.provider):
            return self.provider
        return f"{self.provider}.{self.name}"

    def validate_configuration(self, configuration: Dict[str, Any]) -> RegistryConfiguration:
        """Validate raw configuration.

        Raises:
            ConfigurationError: If the configuration is invalid
        """
        try:
            return self.configuration_model.model_validate(configuration)
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid configuration for registry {self.provider}.{self.name}: {e}"
            ) from e

    def mask_configuration(self) -> Dict[str, Any]:
        return mask_fields(
            self.configuration.model_dump(exclude_none=True), self.secret_fields
        )

    async def close(self) -> None:
        await self.client.aclose()

    @abstractmethod
    def match(self, image: ContainerImage) -> bool:
        """Return True if this registry serves the image."""
        pass

    @abstractmethod
    def normalize_image(self, image: ContainerImage) -> ContainerImage:
        """Return the image with its registry name and v2 endpoint set."""
        pass

    async def authenticate(self, image: ContainerImage, headers: Dict[str, str]) -> Dict[str, str]:
        """Add authentication headers for a request on the image repository."""
        credentials = self.get_auth_credentials()
        if credentials:
            headers["Authorization"] = f"Basic {credentials}"
        return headers

    def get_auth_credentials(self) -> Optional[str]:
        """base64 ``user:password`` credentials, if configured."""
        auth = getattr(self.configuration, "auth", None)
        if auth:
            return auth
        login = getattr(self.configuration, "login", None)
        password = getattr(self.configuration, "password", None)
        if login and password:
            return base64.b64encode(f"{login}:{password}".encode()).decode()
        return None

    @async_retry(
        max_attempts=3,
        backoff_base=1.0,
        backoff_max=10.0,
        exceptions=(httpx.TransportError,),
    )
    async def _request_with_retry(self, method: str, url: str, **kwargs) -> httpx.Response:
        """HTTP request retried on transient transport failures."""
        response = await self.client.request(method, url, **kwargs)
        response.raise_for_status()
        return response

    async def _call_registry(
        self,
        image: ContainerImage,
        url: str,
        method: str = "GET",
        accept: str = "application/json",
    ) -> httpx.Response:
        headers = await self.authenticate(image, {"Accept": accept})
        return await self._request_with_retry(method, url, headers=headers)

    async def get_tags(self, image: ContainerImage) -> List[str]:
        """List all tags of the image repository (follows Link pagination)."""
        logger.debug(f"{self.id} - Get {image.name} tags")
        url: Optional[str] = f"{image.registry.url}/{image.name}/tags/list"
        tags: List[str] = []
        while url:
            response = await self._call_registry(image, url)
            try:
                page = response.json()
            except ValueError as e:
                raise RegistryError(f"Invalid tags list for {image.name}: {e}") from e
            tags.extend(page.get("tags") or [])

            url = None
            link = response.headers.get("link")
            if link:
                match = _LINK_NEXT_RE.search(link)
                if match:
                    url = str(response.url.join(match.group(1)))
        return tags

    async def get_image_manifest_digest(
        self,
        image: ContainerImage,
        digest: Optional[str] = None,
    ) -> ManifestDigest:
        """Resolve the manifest digest of a tag (or of a repo digest).

        Manifest lists and OCI indexes are resolved to the entry matching the
        image platform. Legacy v1 manifests return the image config id.

        Raises:
            RegistryError: If no usable manifest was found
        """
        tag_or_digest = digest or image.tag.value
        url = f"{image.registry.url}/{image.name}/manifests/{tag_or_digest}"
        response = await self._call_registry(image, url, accept=MANIFEST_ACCEPT)
        try:
            manifest = response.json()
        except ValueError as e:
            raise RegistryError(f"Invalid manifest for {image.name}:{tag_or_digest}: {e}") from e

        manifest_digest = None
        manifest_media_type = None
        media_type = manifest.get("mediaType") or response.headers.get("content-type", "").split(";")[0]

        if manifest.get("schemaVersion") == 2:
            if media_type in (MEDIA_TYPE_MANIFEST_LIST_V2, MEDIA_TYPE_OCI_INDEX):
                entry = self._select_platform(image, manifest.get("manifests") or [])
                if entry is not None:
                    manifest_digest = entry.get("digest")
                    manifest_media_type = entry.get("mediaType")
            elif media_type in (MEDIA_TYPE_MANIFEST_V2, MEDIA_TYPE_OCI_MANIFEST):
                config = manifest.get("config") or {}
                manifest_digest = config.get("digest")
                manifest_media_type = config.get("mediaType")
        elif manifest.get("schemaVersion") == 1:
            history = manifest.get("history") or [{}]
            v1_compat = history[0].get("v1Compatibility")
            if v1_compat:
                v1 = json.loads(v1_compat)
                return ManifestDigest(
                    digest=(v1.get("config") or {}).get("Image"),
                    version=1,
                    created=v1.get("created"),
                )

        if manifest_digest and manifest_media_type in (MEDIA_TYPE_MANIFEST_V2, MEDIA_TYPE_OCI_MANIFEST):
            head_url = f"{image.registry.url}/{image.name}/manifests/{manifest_digest}"
            head = await self._call_registry(image, head_url, method="HEAD", accept=manifest_media_type)
            return ManifestDigest(digest=head.headers.get("docker-content-digest"), version=2)

        if manifest_digest and manifest_media_type in (MEDIA_TYPE_CONTAINER_CONFIG, MEDIA_TYPE_OCI_CONFIG):
            return ManifestDigest(digest=manifest_digest, version=1)

        raise RegistryError(f"No manifest found for {image.name}:{tag_or_digest}")

    @staticmethod
    def _select_platform(image: ContainerImage, manifests: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """Pick the manifest list entry matching the image platform."""
        candidates = [
            entry for entry in manifests
            if (entry.get("platform") or {}).get("architecture") == image.architecture
            and (entry.get("platform") or {}).get("os") == image.os
        ]
        if len(candidates) > 1 and image.variant:
            with_variant = [
                entry for entry in candidates
                if (entry.get("platform") or {}).get("variant") == image.variant
            ]
            candidates = with_variant or candidates
        return candidates[0] if candidates else None

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(id={self.id})>"


class CustomConfiguration(BasicAuthConfiguration):
    url: str

    @field_validator("url")
    @classmethod
    def _add_scheme(cls, value: str) -> str:
        value = value.rstrip("/")
        if not re.match(r"^https?://", value):
            value = f"https://{value}"
        return value


class CustomRegistry(RegistryProvider):
    """Self-hosted v2 registry reached at a configured URL."""

    provider = "custom"
    configuration_model = CustomConfiguration

    def match(self, image: ContainerImage) -> bool:
        return host_of(image.registry.url) == host_of(self.configuration.url)

    def normalize_image(self, image: ContainerImage) -> ContainerImage:
        normalized = image.model_copy(deep=True)
        normalized.registry.name = self.id
        normalized.registry.url = f"{self.configuration.url}/v2"
        return normalized
