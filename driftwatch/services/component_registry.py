"""Component registration.

Builds the runtime shared by every component and registers registries,
triggers and watchers from their configurations. A component failing
validation is logged and skipped; the others still register.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from docker.errors import DockerException
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from driftwatch.exceptions import ConfigurationError, UnknownProviderError
from driftwatch.services.container_store import ContainerStore
from driftwatch.services.event_bus import EventBus
from driftwatch.services.install_orchestrator import InstallOrchestrator
from driftwatch.services.registries import REGISTRY_PROVIDERS
from driftwatch.services.registry_resolver import RegistryResolver
from driftwatch.services.scheduler import SchedulerService
from driftwatch.services.script_output import ScriptOutputRegistry
from driftwatch.services.trigger_engine import TriggerEngine
from driftwatch.services.triggers import TRIGGER_PROVIDERS
from driftwatch.services.watchers import WATCHER_PROVIDERS, DockerWatcher

logger = logging.getLogger(__name__)

COMPONENT_PROVIDERS: Dict[str, Dict[str, type]] = {
    "registry": REGISTRY_PROVIDERS,
    "trigger": TRIGGER_PROVIDERS,
    "watcher": WATCHER_PROVIDERS,
}

# Anonymous registries always available
DEFAULT_REGISTRIES = ("hub", "ghcr", "gcr", "quay", "lscr")

ConfigurationsByProvider = Mapping[str, Mapping[str, Dict[str, Any]]]


def get_component_class(kind: str, provider: str) -> type:
    """Component class registered for (kind, provider).

    Raises:
        UnknownProviderError: If nothing is registered for this pair
    """
    providers = COMPONENT_PROVIDERS.get(kind, {})
    component_class = providers.get(provider.lower())
    if component_class is None:
        raise UnknownProviderError(kind, provider, providers.keys())
    return component_class


@dataclass
class Runtime:
    """Components shared by the whole application."""

    event_bus: EventBus
    store: ContainerStore
    resolver: RegistryResolver
    scheduler: SchedulerService
    output_registry: ScriptOutputRegistry
    orchestrator: InstallOrchestrator
    trigger_engine: TriggerEngine
    watchers: Dict[str, DockerWatcher] = field(default_factory=dict)


def build_runtime(session_factory: Optional[async_sessionmaker[AsyncSession]] = None) -> Runtime:
    event_bus = EventBus()
    store = ContainerStore(event_bus, session_factory)
    watchers: Dict[str, DockerWatcher] = {}
    output_registry = ScriptOutputRegistry()
    orchestrator = InstallOrchestrator(store, event_bus, watchers, output_registry)
    return Runtime(
        event_bus=event_bus,
        store=store,
        resolver=RegistryResolver(),
        scheduler=SchedulerService(),
        output_registry=output_registry,
        orchestrator=orchestrator,
        trigger_engine=TriggerEngine(store, event_bus, orchestrator),
        watchers=watchers,
    )


def register_registries(runtime: Runtime, configurations: ConfigurationsByProvider) -> int:
    """Register the default anonymous registries, then the configured ones.

    Returns:
        Number of configured registries registered
    """
    for provider in DEFAULT_REGISTRIES:
        runtime.resolver.register(get_component_class("registry", provider)())

    registered = 0
    for provider, names in configurations.items():
        for name, configuration in names.items():
            try:
                registry = get_component_class("registry", provider)(name, configuration)
            except ConfigurationError as e:
                logger.warning(f"Registry {provider}.{name} not registered: {e}")
                continue
            runtime.resolver.register(registry)
            logger.info(f"Registry {registry.id} registered ({registry.mask_configuration()})")
            registered += 1
    return registered


async def register_triggers(runtime: Runtime, configurations: ConfigurationsByProvider) -> int:
    registered = 0
    for provider, names in configurations.items():
        for name, configuration in names.items():
            try:
                trigger = get_component_class("trigger", provider)(name, configuration)
            except ConfigurationError as e:
                logger.warning(f"Trigger {provider}.{name} not registered: {e}")
                continue
            await runtime.trigger_engine.register(trigger)
            logger.info(f"Trigger {trigger.id} registered ({trigger.mask_configuration()})")
            registered += 1
    return registered


async def register_watchers(runtime: Runtime, configurations: Mapping[str, Dict[str, Any]]) -> int:
    """Register and start docker watchers by name."""
    registered = 0
    for name, configuration in configurations.items():
        try:
            watcher = get_component_class("watcher", "docker")(
                name,
                configuration,
                store=runtime.store,
                resolver=runtime.resolver,
                event_bus=runtime.event_bus,
                scheduler=runtime.scheduler,
                active_installs=runtime.orchestrator.active_installs,
            )
        except (ConfigurationError, DockerException) as e:
            logger.warning(f"Watcher docker.{name} not registered: {e}")
            continue
        previous = runtime.watchers.pop(watcher.name, None)
        if previous is not None:
            await previous.stop()
        runtime.watchers[watcher.name] = watcher
        await watcher.start()
        logger.info(f"Watcher docker.{watcher.name} registered ({watcher.mask_configuration()})")
        registered += 1
    return registered


async def deregister_all(runtime: Runtime) -> None:
    """Stop every component (watchers first so no scan outlives its triggers)."""
    for name in list(runtime.watchers):
        watcher = runtime.watchers.pop(name)
        await watcher.stop()
    await runtime.trigger_engine.stop_all()
    await runtime.resolver.close()
    await runtime.scheduler.stop()
