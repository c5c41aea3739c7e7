"""Tests for registry providers (driftwatch/services/registries)."""

import json

import httpx
import pytest

from driftwatch.exceptions import ConfigurationError, RegistryError
from driftwatch.schemas.container import ContainerImage
from driftwatch.services.registries import (
    CustomRegistry,
    GcrRegistry,
    GhcrRegistry,
    GiteaRegistry,
    HubRegistry,
    LscrRegistry,
    QuayRegistry,
)
from driftwatch.services.registries.base import (
    MEDIA_TYPE_MANIFEST_LIST_V2,
    MEDIA_TYPE_MANIFEST_V2,
)


def make_image(url=None, name="app", tag="1.2.0", **extra) -> ContainerImage:
    return ContainerImage.model_validate(
        {
            "id": "sha256:image",
            "registry": {"url": url},
            "name": name,
            "tag": {"value": tag, "semver": True},
            "digest": {"watch": True},
            "architecture": "amd64",
            "os": "linux",
            **extra,
        }
    )


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestMatchAndNormalize:
    """Tests for registry recognition and URL normalization."""

    def test_hub(self):
        hub = HubRegistry()
        assert hub.match(make_image())
        assert hub.match(make_image(url="docker.io"))
        assert not hub.match(make_image(url="ghcr.io"))

        normalized = hub.normalize_image(make_image(name="nginx"))
        assert normalized.registry.name == "hub"
        assert normalized.registry.url == "https://registry-1.docker.io/v2"
        assert normalized.name == "library/nginx"

    def test_ghcr_and_lscr(self):
        assert GhcrRegistry().match(make_image(url="ghcr.io"))
        lscr = LscrRegistry()
        assert lscr.match(make_image(url="lscr.io"))
        normalized = lscr.normalize_image(make_image(url="lscr.io", name="linuxserver/app"))
        assert normalized.registry.name == "lscr"
        assert normalized.registry.url == "https://ghcr.io/v2"

    def test_gcr_and_quay(self):
        assert GcrRegistry().match(make_image(url="eu.gcr.io"))
        assert not GcrRegistry().match(make_image(url="quay.io"))
        assert QuayRegistry().match(make_image(url="quay.io"))

    def test_custom(self):
        custom = CustomRegistry("private", {"url": "registry.local:5000"})
        assert custom.id == "custom.private"
        assert custom.match(make_image(url="registry.local:5000"))
        assert custom.normalize_image(make_image(url="registry.local:5000")).registry.url == (
            "https://registry.local:5000/v2"
        )

    def test_gitea(self):
        gitea = GiteaRegistry("forge", {"url": "git.example.com"})
        assert gitea.id == "gitea.forge"
        assert gitea.match(make_image(url="git.example.com"))
        assert not gitea.match(make_image(url="ghcr.io"))


class TestConfiguration:
    """Tests for configuration validation and masking."""

    def test_login_requires_password(self):
        with pytest.raises(ConfigurationError):
            HubRegistry("private", {"login": "me"})

    def test_unknown_key_rejected(self):
        with pytest.raises(ConfigurationError):
            HubRegistry("private", {"nope": "x"})

    def test_mask(self):
        hub = HubRegistry("private", {"login": "me", "password": "secret"})
        assert hub.mask_configuration() == {"login": "me", "password": "s****t"}
        assert hub.id == "hub.private"


class TestRegistryApi:
    """Tests for tag listing and manifest digests."""

    @pytest.mark.asyncio
    async def test_tags_pagination(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/v2/app/tags/list" and "last" not in request.url.params:
                return httpx.Response(
                    200,
                    json={"tags": ["1.0.0", "1.1.0"]},
                    headers={"Link": '</v2/app/tags/list?last=1.1.0&n=2>; rel="next"'},
                )
            return httpx.Response(200, json={"tags": ["2.0.0"]})

        registry = CustomRegistry("private", {"url": "https://registry.local"}, client=mock_client(handler))
        image = registry.normalize_image(make_image(url="registry.local"))
        assert await registry.get_tags(image) == ["1.0.0", "1.1.0", "2.0.0"]
        await registry.close()

    @pytest.mark.asyncio
    async def test_manifest_list_platform_digest(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.method, request.url.path))
            if request.method == "GET":
                return httpx.Response(
                    200,
                    json={
                        "schemaVersion": 2,
                        "mediaType": MEDIA_TYPE_MANIFEST_LIST_V2,
                        "manifests": [
                            {
                                "digest": "sha256:arm",
                                "mediaType": MEDIA_TYPE_MANIFEST_V2,
                                "platform": {"architecture": "arm64", "os": "linux"},
                            },
                            {
                                "digest": "sha256:amd",
                                "mediaType": MEDIA_TYPE_MANIFEST_V2,
                                "platform": {"architecture": "amd64", "os": "linux"},
                            },
                        ],
                    },
                )
            return httpx.Response(200, headers={"docker-content-digest": "sha256:content"})

        registry = CustomRegistry("private", {"url": "https://registry.local"}, client=mock_client(handler))
        image = registry.normalize_image(make_image(url="registry.local"))

        result = await registry.get_image_manifest_digest(image)
        assert result.digest == "sha256:content"
        assert result.version == 2
        assert seen == [("GET", "/v2/app/manifests/1.2.0"), ("HEAD", "/v2/app/manifests/sha256:amd")]
        await registry.close()

    @pytest.mark.asyncio
    async def test_v1_manifest(self):
        v1 = {"config": {"Image": "sha256:config"}, "created": "2024-01-01T00:00:00Z"}

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200, json={"schemaVersion": 1, "history": [{"v1Compatibility": json.dumps(v1)}]}
            )

        registry = CustomRegistry("private", {"url": "https://registry.local"}, client=mock_client(handler))
        image = registry.normalize_image(make_image(url="registry.local"))

        result = await registry.get_image_manifest_digest(image)
        assert (result.digest, result.version, result.created) == (
            "sha256:config",
            1,
            "2024-01-01T00:00:00Z",
        )
        await registry.close()

    @pytest.mark.asyncio
    async def test_no_matching_platform(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={"schemaVersion": 2, "mediaType": MEDIA_TYPE_MANIFEST_LIST_V2, "manifests": []},
            )

        registry = CustomRegistry("private", {"url": "https://registry.local"}, client=mock_client(handler))
        image = registry.normalize_image(make_image(url="registry.local"))
        with pytest.raises(RegistryError):
            await registry.get_image_manifest_digest(image)
        await registry.close()

    @pytest.mark.asyncio
    async def test_http_error_propagates(self):
        registry = CustomRegistry(
            "private",
            {"url": "https://registry.local"},
            client=mock_client(lambda request: httpx.Response(404)),
        )
        image = registry.normalize_image(make_image(url="registry.local"))
        with pytest.raises(httpx.HTTPStatusError):
            await registry.get_tags(image)
        await registry.close()

    @pytest.mark.asyncio
    async def test_hub_bearer_token(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "auth.docker.io":
                assert request.url.params["scope"] == "repository:library/nginx:pull"
                return httpx.Response(200, json={"token": "abc"})
            assert request.headers["Authorization"] == "Bearer abc"
            return httpx.Response(200, json={"tags": ["1.25.0"]})

        hub = HubRegistry(client=mock_client(handler))
        image = hub.normalize_image(make_image(name="nginx"))
        assert await hub.get_tags(image) == ["1.25.0"]
        await hub.close()
