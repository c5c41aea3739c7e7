"""ntfy trigger."""

import logging
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from driftwatch.schemas.container import Container
from driftwatch.services.triggers.base import Trigger, TriggerConfiguration

logger = logging.getLogger(__name__)


class NtfyAuthConfiguration(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user: Optional[str] = None
    password: Optional[str] = None
    token: Optional[str] = None


class NtfyConfiguration(TriggerConfiguration):
    url: str = "https://ntfy.sh"
    topic: str = Field(min_length=1)
    priority: Optional[int] = Field(default=None, ge=0, le=5)
    auth: Optional[NtfyAuthConfiguration] = None


class NtfyTrigger(Trigger):
    """Publish update notifications to an ntfy topic."""

    provider = "ntfy"
    configuration_model = NtfyConfiguration
    secret_fields = ("password", "token")

    async def trigger(self, container: Container) -> None:
        await self.send(self.render_simple_title(container), self.render_simple_body(container))

    async def trigger_batch(self, containers: List[Container]) -> None:
        await self.send(self.render_batch_title(containers), self.render_batch_body(containers))

    async def send(self, title: str, message: str) -> None:
        """Publish a message.

        Raises:
            httpx.HTTPStatusError: If the server rejects the message
        """
        payload = {"topic": self.configuration.topic, "title": title, "message": message}
        if self.configuration.priority is not None:
            payload["priority"] = self.configuration.priority

        headers = {}
        auth = None
        if self.configuration.auth:
            if self.configuration.auth.token:
                headers["Authorization"] = f"Bearer {self.configuration.auth.token}"
            elif self.configuration.auth.user and self.configuration.auth.password:
                auth = (self.configuration.auth.user, self.configuration.auth.password)

        response = await self.client.post(
            self.configuration.url.rstrip("/"), json=payload, headers=headers, auth=auth
        )
        response.raise_for_status()
        logger.info(f"[ntfy] Sent notification: {title}")
