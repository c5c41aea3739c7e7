"""Gotify trigger."""

import logging
from typing import List, Optional

from pydantic import Field

from driftwatch.schemas.container import Container
from driftwatch.services.triggers.base import Trigger, TriggerConfiguration

logger = logging.getLogger(__name__)


class GotifyConfiguration(TriggerConfiguration):
    url: str = Field(min_length=1)
    token: str = Field(min_length=1)
    priority: Optional[int] = Field(default=None, ge=0)


class GotifyTrigger(Trigger):
    """Push update notifications to a Gotify application."""

    provider = "gotify"
    configuration_model = GotifyConfiguration
    secret_fields = ("token",)

    async def trigger(self, container: Container) -> None:
        await self.send(self.render_simple_title(container), self.render_simple_body(container))

    async def trigger_batch(self, containers: List[Container]) -> None:
        await self.send(self.render_batch_title(containers), self.render_batch_body(containers))

    async def send(self, title: str, message: str) -> None:
        payload = {"title": title, "message": message}
        if self.configuration.priority is not None:
            payload["priority"] = self.configuration.priority

        response = await self.client.post(
            f"{self.configuration.url.rstrip('/')}/message",
            json=payload,
            headers={"X-Gotify-Key": self.configuration.token},
        )
        response.raise_for_status()
        logger.info(f"[gotify] Sent notification: {title}")
