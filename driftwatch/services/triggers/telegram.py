"""Telegram bot trigger."""

import html
import logging
import re
from typing import List, Literal

from pydantic import Field, field_validator

from driftwatch.schemas.container import Container
from driftwatch.services.triggers.base import Trigger, TriggerConfiguration

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"

_MARKDOWN_SPECIAL_RE = re.compile(r"([_*\[\]()~`>#+\-=|{}.!\\])")


def escape_markdown(text: str) -> str:
    """Escape text for Telegram MarkdownV2."""
    return _MARKDOWN_SPECIAL_RE.sub(r"\\\1", text)


class TelegramConfiguration(TriggerConfiguration):
    bottoken: str = Field(min_length=1)
    chatid: str = Field(min_length=1)
    disabletitle: bool = False
    messageformat: Literal["Markdown", "HTML"] = "Markdown"

    @field_validator("messageformat", mode="before")
    @classmethod
    def _normalize_format(cls, value):
        if isinstance(value, str):
            return "HTML" if value.lower() == "html" else "Markdown" if value.lower() == "markdown" else value
        return value


class TelegramTrigger(Trigger):
    """Send update notifications through a Telegram bot."""

    provider = "telegram"
    configuration_model = TelegramConfiguration
    secret_fields = ("bottoken",)

    async def trigger(self, container: Container) -> None:
        await self.send(self.render_simple_title(container), self.render_simple_body(container))

    async def trigger_batch(self, containers: List[Container]) -> None:
        await self.send(self.render_batch_title(containers), self.render_batch_body(containers))

    def format_message(self, title: str, body: str) -> str:
        if self.configuration.messageformat == "HTML":
            body = html.escape(body)
            if self.configuration.disabletitle:
                return body
            return f"<b>{html.escape(title)}</b>\n\n{body}"

        body = escape_markdown(body)
        if self.configuration.disabletitle:
            return body
        return f"*{escape_markdown(title)}*\n\n{body}"

    async def send(self, title: str, body: str) -> None:
        """Send a message to the configured chat.

        Raises:
            httpx.HTTPStatusError: If the bot API rejects the request
            RuntimeError: If the bot API answers ``ok: false``
        """
        parse_mode = "HTML" if self.configuration.messageformat == "HTML" else "MarkdownV2"
        response = await self.client.post(
            f"{TELEGRAM_API_URL}/bot{self.configuration.bottoken}/sendMessage",
            json={
                "chat_id": self.configuration.chatid,
                "text": self.format_message(title, body),
                "parse_mode": parse_mode,
            },
        )
        response.raise_for_status()
        result = response.json()
        if not result.get("ok"):
            raise RuntimeError(f"Telegram API error: {result.get('description', 'Unknown error')}")
        logger.info(f"[telegram] Sent notification: {title}")
