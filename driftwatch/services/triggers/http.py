"""HTTP webhook trigger."""

import logging
from typing import Any, Dict, List, Literal, Optional

import httpx
from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from driftwatch.schemas.container import Container, full_name
from driftwatch.services.triggers.base import Trigger, TriggerConfiguration

logger = logging.getLogger(__name__)


class HttpAuthConfiguration(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["BASIC", "BEARER"] = "BASIC"
    user: Optional[str] = None
    password: Optional[str] = None
    bearer: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def _uppercase(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    @model_validator(mode="after")
    def _check_credentials(self) -> "HttpAuthConfiguration":
        if self.type == "BASIC" and not (self.user and self.password):
            raise ValueError("BASIC auth requires user and password")
        if self.type == "BEARER" and not self.bearer:
            raise ValueError("BEARER auth requires bearer")
        return self


class HttpConfiguration(TriggerConfiguration):
    url: str
    method: Literal["GET", "POST"] = "POST"
    auth: Optional[HttpAuthConfiguration] = None
    proxy: Optional[str] = None
    install: bool = False

    @field_validator("method", mode="before")
    @classmethod
    def _uppercase(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    @field_validator("url", "proxy")
    @classmethod
    def _check_url(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.startswith(("http://", "https://")):
            raise ValueError("must be an http(s) URL")
        return value


class HttpTrigger(Trigger):
    """Send container payloads to a webhook.

    POST sends the container as JSON, GET sends it as query parameters. When
    ``install`` is enabled the webhook only receives install requests and
    update notifications are skipped.
    """

    provider = "http"
    configuration_model = HttpConfiguration
    secret_fields = ("password", "bearer")

    def _create_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=30.0, proxy=self.configuration.proxy)

    async def trigger(self, container: Container) -> None:
        if self.install_enabled:
            logger.debug(f"{full_name(container)} - Trigger {self.id} reserved for install")
            return
        await self.send(container.to_json_dict(), action_type="trigger")

    async def trigger_batch(self, containers: List[Container]) -> None:
        if self.install_enabled:
            logger.debug(f"Trigger {self.id} reserved for install")
            return
        await self.send(
            {"containers": [container.to_json_dict() for container in containers]},
            action_type="trigger",
        )

    async def install(self, container: Container) -> None:
        """Ask the webhook to install the update of ``container``."""
        logger.info(f"{full_name(container)} - Send install request to {self.id}")
        await self.send(container.to_json_dict(), action_type="install")

    async def send(self, payload: Dict[str, Any], action_type: str = "trigger") -> httpx.Response:
        """Send a payload and its ``actionType`` to the configured URL.

        Batches are sent as ``{"containers": [...]}``.

        Raises:
            httpx.HTTPStatusError: If the webhook answers with an error status
        """
        payload = {**payload, "actionType": action_type}
        request: Dict[str, Any] = {"headers": {}}
        auth = self.configuration.auth
        if auth is not None:
            if auth.type == "BASIC":
                request["auth"] = (auth.user, auth.password)
            else:
                request["headers"]["Authorization"] = f"Bearer {auth.bearer}"

        if self.configuration.method == "POST":
            request["json"] = payload
        else:
            request["params"] = _query_params(payload)

        response = await self.client.request(
            self.configuration.method, self.configuration.url, **request
        )
        response.raise_for_status()
        logger.info(
            f"Trigger {self.id} - {action_type} request sent to {self.configuration.url} "
            f"({response.status_code})"
        )
        return response


def _query_params(payload: Any) -> Dict[str, str]:
    """Flatten a payload into query parameters (nested values as dotted keys)."""
    params: Dict[str, str] = {}

    def _walk(prefix: str, value: Any) -> None:
        if isinstance(value, dict):
            for key, item in value.items():
                _walk(f"{prefix}.{key}" if prefix else str(key), item)
        elif isinstance(value, list):
            for index, item in enumerate(value):
                _walk(f"{prefix}.{index}" if prefix else str(index), item)
        elif value is not None:
            params[prefix] = str(value).lower() if isinstance(value, bool) else str(value)

    _walk("", payload)
    return params
