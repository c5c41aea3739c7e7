"""Discord webhook trigger."""

import logging
from typing import Any, Dict, List

from pydantic import Field, field_validator

from driftwatch.schemas.container import Container
from driftwatch.services.triggers.base import Trigger, TriggerConfiguration

logger = logging.getLogger(__name__)


class DiscordConfiguration(TriggerConfiguration):
    url: str = Field(min_length=1)
    botusername: str = "Driftwatch"
    cardcolor: int = 65280
    cardlabel: str = ""

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        if not value.startswith("https://"):
            raise ValueError("webhook URL must use https")
        return value


class DiscordTrigger(Trigger):
    """Post update notifications as Discord embeds."""

    provider = "discord"
    configuration_model = DiscordConfiguration
    secret_fields = ("url",)

    async def trigger(self, container: Container) -> None:
        await self.send(self.render_simple_title(container), self.render_simple_body(container))

    async def trigger_batch(self, containers: List[Container]) -> None:
        await self.send(self.render_batch_title(containers), self.render_batch_body(containers))

    def build_payload(self, title: str, body: str) -> Dict[str, Any]:
        return {
            "username": self.configuration.botusername,
            "embeds": [
                {
                    "title": title,
                    "color": self.configuration.cardcolor,
                    "fields": [
                        {"name": self.configuration.cardlabel or "Container", "value": body}
                    ],
                }
            ],
        }

    async def send(self, title: str, body: str) -> None:
        response = await self.client.post(self.configuration.url, json=self.build_payload(title, body))
        response.raise_for_status()
        logger.info(f"[discord] Sent notification: {title}")
