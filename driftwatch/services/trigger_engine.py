"""Trigger registration and install dispatch."""

import logging
from typing import Dict, List, Optional

from driftwatch.exceptions import (
    AmbiguousInstallError,
    ContainerNotFoundError,
    InstallNotEnabledError,
    InstallNotSupportedError,
)
from driftwatch.schemas.container import full_name
from driftwatch.services.container_store import ContainerStore
from driftwatch.services.event_bus import EventBus
from driftwatch.services.install_orchestrator import InstallOrchestrator, InstallResult
from driftwatch.services.triggers.base import Trigger

logger = logging.getLogger(__name__)


class TriggerEngine:
    """Registered triggers and the install entry point."""

    def __init__(
        self,
        store: ContainerStore,
        event_bus: EventBus,
        orchestrator: InstallOrchestrator,
    ) -> None:
        self.store = store
        self.event_bus = event_bus
        self.orchestrator = orchestrator
        self._triggers: Dict[str, Trigger] = {}

    @property
    def triggers(self) -> Dict[str, Trigger]:
        return dict(self._triggers)

    async def register(self, trigger: Trigger) -> None:
        previous = self._triggers.get(trigger.id)
        if previous is not None:
            await previous.stop(self.event_bus)
        self._triggers[trigger.id] = trigger
        await trigger.start(self.event_bus)

    async def unregister(self, trigger_id: str) -> Optional[Trigger]:
        trigger = self._triggers.pop(trigger_id, None)
        if trigger is not None:
            await trigger.stop(self.event_bus)
        return trigger

    async def stop_all(self) -> None:
        for trigger_id in list(self._triggers):
            await self.unregister(trigger_id)

    def get_install_trigger(self) -> Trigger:
        """The single trigger with install enabled.

        Raises:
            InstallNotEnabledError: If no trigger has install enabled
            AmbiguousInstallError: If more than one trigger has it enabled
            InstallNotSupportedError: If the install trigger runs in batch mode
        """
        candidates: List[Trigger] = [t for t in self._triggers.values() if t.install_enabled]
        if not candidates:
            raise InstallNotEnabledError("No trigger has install enabled")
        if len(candidates) > 1:
            ids = ", ".join(sorted(t.id for t in candidates))
            raise AmbiguousInstallError(f"Several triggers have install enabled ({ids})")
        trigger = candidates[0]
        if trigger.configuration.mode == "batch":
            raise InstallNotSupportedError(f"Trigger {trigger.id} runs in batch mode and cannot install")
        return trigger

    async def install(self, container_id: str) -> InstallResult:
        """Install the pending update of a container.

        Raises:
            InstallError: If install cannot be dispatched (see
                ``get_install_trigger``) or the container is unknown
        """
        trigger = self.get_install_trigger()
        container = self.store.get(container_id)
        if container is None:
            raise ContainerNotFoundError(container_id)

        if trigger.orchestrated_install:
            return await self.orchestrator.install(trigger, container_id)

        try:
            await trigger.install(container)
        except Exception as e:
            logger.error(f"{full_name(container)} - Install request to {trigger.id} failed: {e}")
            return InstallResult(False, f"Install request failed: {e}", container)
        return InstallResult(True, f"Install request sent to {trigger.id}", container)
