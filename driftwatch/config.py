"""Environment configuration.

Components are configured through ``DRIFTWATCH_*`` variables; each underscore
after the prefix opens one nesting level, so
``DRIFTWATCH_TRIGGER_HTTP_HOOK_AUTH_USER=me`` becomes
``{"trigger": {"http": {"hook": {"auth": {"user": "me"}}}}}``.
"""

import logging
import os
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

ENV_PREFIX = "DRIFTWATCH_"

DEFAULT_WATCHER_NAME = "local"
DEFAULT_LOG_LEVEL = "INFO"


def get_configuration_values(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Nested configuration dict built from ``DRIFTWATCH_*`` variables.

    Keys are lowercased. A variable colliding with a nested section is
    ignored with a warning.
    """
    environ = os.environ if environ is None else environ
    values: Dict[str, Any] = {}

    for variable in sorted(environ):
        if not variable.startswith(ENV_PREFIX):
            continue
        path = [part for part in variable[len(ENV_PREFIX):].lower().split("_") if part]
        if not path:
            continue

        node = values
        for part in path[:-1]:
            child = node.setdefault(part, {})
            if not isinstance(child, dict):
                logger.warning(f"Ignoring {variable}: {part} is already set to a value")
                break
            node = child
        else:
            if isinstance(node.get(path[-1]), dict):
                logger.warning(f"Ignoring {variable}: {path[-1]} is a configuration section")
                continue
            node[path[-1]] = environ[variable]

    return values


def _sections(section: Any, context: str) -> Dict[str, Dict[str, Any]]:
    if not isinstance(section, dict):
        return {}
    sections: Dict[str, Dict[str, Any]] = {}
    for key, value in section.items():
        if isinstance(value, dict):
            sections[key] = value
        else:
            logger.warning(f"Ignoring {context} entry '{key}': expected a configuration section")
    return sections


def get_watcher_configurations(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Dict[str, Any]]:
    """Docker watcher configurations by name (a ``local`` watcher by default)."""
    watchers = _sections(get_configuration_values(environ).get("watcher"), "watcher")
    if not watchers:
        return {DEFAULT_WATCHER_NAME: {}}
    return watchers


def get_registry_configurations(
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Dict[str, Dict[str, Any]]]:
    """Registry configurations by provider, then by name."""
    providers = _sections(get_configuration_values(environ).get("registry"), "registry")
    return {provider: _sections(names, f"registry {provider}") for provider, names in providers.items()}


def get_trigger_configurations(
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Dict[str, Dict[str, Any]]]:
    """Trigger configurations by provider, then by name."""
    providers = _sections(get_configuration_values(environ).get("trigger"), "trigger")
    return {provider: _sections(names, f"trigger {provider}") for provider, names in providers.items()}


def get_log_level(environ: Optional[Mapping[str, str]] = None) -> str:
    environ = os.environ if environ is None else environ
    return environ.get("LOG_LEVEL", DEFAULT_LOG_LEVEL).upper()
