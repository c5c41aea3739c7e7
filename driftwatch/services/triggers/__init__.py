"""Trigger providers."""

from driftwatch.services.triggers.base import (
    Trigger,
    TriggerConfiguration,
    is_threshold_reached,
    parse_trigger_reference,
)
from driftwatch.services.triggers.command import CommandTrigger
from driftwatch.services.triggers.discord import DiscordTrigger
from driftwatch.services.triggers.gotify import GotifyTrigger
from driftwatch.services.triggers.http import HttpTrigger
from driftwatch.services.triggers.ntfy import NtfyTrigger
from driftwatch.services.triggers.script import ScriptTrigger
from driftwatch.services.triggers.telegram import TelegramTrigger

TRIGGER_PROVIDERS = {
    trigger.provider: trigger
    for trigger in (
        CommandTrigger,
        DiscordTrigger,
        GotifyTrigger,
        HttpTrigger,
        NtfyTrigger,
        ScriptTrigger,
        TelegramTrigger,
    )
}

__all__ = [
    "TRIGGER_PROVIDERS",
    "CommandTrigger",
    "DiscordTrigger",
    "GotifyTrigger",
    "HttpTrigger",
    "NtfyTrigger",
    "ScriptTrigger",
    "TelegramTrigger",
    "Trigger",
    "TriggerConfiguration",
    "is_threshold_reached",
    "parse_trigger_reference",
]
