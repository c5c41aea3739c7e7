"""Script install orchestration.

An install runs the script, waits for the engine to run the container on a
new image, forces a rescan of the owning watcher, then removes the stale
records. Progress and outcome are reported through the container
notification; failures never delete anything.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Mapping, Optional, Set

from driftwatch.exceptions import (
    DriftwatchError,
    ImageUpdateTimeoutError,
    WatcherRescanTimeoutError,
)
from driftwatch.schemas.container import Container, ContainerNotification, full_name
from driftwatch.services.container_store import ContainerStore
from driftwatch.services.event_bus import (
    TRIGGER_WATCH_REQUEST,
    WATCHER_STOP,
    EventBus,
    WatcherEvent,
    WatchRequest,
)
from driftwatch.services.script_output import ScriptOutputRegistry
from driftwatch.services.triggers.script import ScriptTrigger, script_arguments
from driftwatch.services.watchers.docker import DockerWatcher, RunningContainer
from driftwatch.utils.retry import compute_backoff

logger = logging.getLogger(__name__)

CLEANUP_ATTEMPTS = 3
CLEANUP_BACKOFF_SECONDS = 1.0


@dataclass
class InstallResult:
    success: bool
    message: str
    container: Optional[Container] = None


class InstallOrchestrator:
    """Drive script installs from start to cleanup.

    Args:
        store: Container store
        event_bus: Event bus used for the forced rescan
        watchers: Watchers by name
        output_registry: Registry receiving the script output
    """

    def __init__(
        self,
        store: ContainerStore,
        event_bus: EventBus,
        watchers: Mapping[str, DockerWatcher],
        output_registry: Optional[ScriptOutputRegistry] = None,
    ) -> None:
        self.store = store
        self.event_bus = event_bus
        self.watchers = watchers
        self.output_registry = output_registry or ScriptOutputRegistry()
        self.cleanup_backoff = CLEANUP_BACKOFF_SECONDS
        # Shared with the watchers so prunes leave these records alone
        self.active_installs: Set[str] = set()

    async def install(self, trigger: ScriptTrigger, container_id: str) -> InstallResult:
        """Install the pending update of a container.

        Returns:
            InstallResult; errors are stored as an error notification on the
            container and reported with ``success=False``
        """
        container = self.store.get(container_id)
        if container is None:
            return InstallResult(False, f"Container {container_id} not found")

        self.active_installs.add(container_id)
        try:
            return await self._install(trigger, container)
        finally:
            self.active_installs.discard(container_id)

    async def _install(self, trigger: ScriptTrigger, container: Container) -> InstallResult:
        container_id = container.id
        target = script_arguments(container)[3]
        await self._notify(container_id, "info", f"Installing {container.image.name}:{target}")

        try:
            watcher = self.watchers.get(container.watcher)
            if watcher is None:
                raise DriftwatchError(f"Watcher {container.watcher} not found")

            await self._run_script(trigger, container)
            running = await self._await_image_update(trigger, watcher, container)
            await self._await_rescan(trigger, watcher)
            await self._cleanup(container, running.id)
        except Exception as e:
            message = f"Install failed: {e}"
            logger.error(f"{full_name(container)} - {message}")
            logger.debug(f"{full_name(container)} - Install failure", exc_info=e)
            stored = await self._notify(container_id, "error", message)
            return InstallResult(False, message, stored)

        message = f"Updated to {container.image.name}:{target}"
        logger.info(f"{full_name(container)} - {message}")
        stored = await self._notify(running.id, "success", message)
        if stored is None:
            stored = await self._notify(container_id, "success", message)
        return InstallResult(True, message, stored)

    async def _notify(self, container_id: str, level: str, message: str) -> Optional[Container]:
        def _set_notification(container: Container) -> Container:
            container.notification = ContainerNotification(message=message, level=level)
            return container

        return await self.store.modify(container_id, _set_notification)

    async def _run_script(self, trigger: ScriptTrigger, container: Container) -> None:
        session = self.output_registry.open(container.id, container.name)
        exit_code = None
        try:
            exit_code = await trigger.run_script(
                container,
                lambda stream, line: self.output_registry.append(session, stream, line),
            )
        finally:
            self.output_registry.close(session, exit_code)

    async def _await_image_update(
        self,
        trigger: ScriptTrigger,
        watcher: DockerWatcher,
        container: Container,
    ) -> RunningContainer:
        """Poll the engine until the container runs on a different image."""
        configuration = trigger.configuration
        previous_image_id = container.image.id

        async def _poll() -> RunningContainer:
            while True:
                running = await watcher.find_running_container(container.name)
                if running is not None and running.image_id != previous_image_id:
                    return running
                await asyncio.sleep(configuration.pollinterval)

        try:
            return await asyncio.wait_for(_poll(), timeout=configuration.imagetimeout)
        except asyncio.TimeoutError:
            raise ImageUpdateTimeoutError(
                configuration.imagetimeout, detail=f"{container.name} still runs {previous_image_id}"
            ) from None

    async def _await_rescan(self, trigger: ScriptTrigger, watcher: DockerWatcher) -> WatcherEvent:
        """Ask the owning watcher to rescan and wait for that scan to end."""
        request_id = uuid.uuid4().hex
        timeout = trigger.configuration.rescantimeout

        def _match(event: WatcherEvent) -> bool:
            return event.request_id == request_id

        async def _request() -> None:
            await self.event_bus.publish(TRIGGER_WATCH_REQUEST, WatchRequest(request_id, watcher.name))

        try:
            return await self.event_bus.wait_for(WATCHER_STOP, _match, timeout, after_subscribe=_request)
        except asyncio.TimeoutError:
            raise WatcherRescanTimeoutError(timeout, detail=f"watcher {watcher.name}") from None

    async def _cleanup(self, container: Container, keep_id: str) -> None:
        """Delete every other record of the container, retrying a few times."""
        if self.store.get(keep_id) is None:
            logger.warning(f"{full_name(container)} - New container {keep_id} not in store; skipping cleanup")
            return

        query = {"name": container.name, "watcher": container.watcher}
        for attempt in range(1, CLEANUP_ATTEMPTS + 1):
            stale = [c for c in self.store.list(query, deduplicate=False) if c.id != keep_id]
            if not stale:
                return
            for record in stale:
                await self.store.delete(record.id)
            if attempt < CLEANUP_ATTEMPTS:
                await asyncio.sleep(
                    compute_backoff(attempt, self.cleanup_backoff, self.cleanup_backoff, "fixed")
                )

        remaining = [c.id for c in self.store.list(query, deduplicate=False) if c.id != keep_id]
        if remaining:
            logger.warning(f"{full_name(container)} - Stale records left after cleanup: {remaining}")
