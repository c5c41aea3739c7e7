"""Docker watcher: discovers containers on one engine host and checks their images.

A scan runs on the cron schedule, once shortly after startup, after a burst of
create/destroy engine events (debounced) and on ``trigger-watch-request``.
Scans on one host never overlap.
"""

import asyncio
import codecs
import json
import logging
from dataclasses import dataclass
from typing import AbstractSet, Any, Dict, List, Optional, Set

import docker
from docker.errors import DockerException, NotFound
from docker.tls import TLSConfig
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from driftwatch.exceptions import ConfigurationError, DriftwatchError
from driftwatch.schemas.container import (
    Container,
    ContainerError,
    ContainerResult,
    full_name,
    result_changed,
    validate,
)
from driftwatch.schemas.report import ContainerReport
from driftwatch.services.container_store import ContainerStore
from driftwatch.services.event_bus import (
    CONTAINER_REPORT,
    CONTAINER_REPORTS,
    TRIGGER_WATCH_REQUEST,
    WATCHER_START,
    WATCHER_STOP,
    EventBus,
    Subscription,
    WatcherEvent,
    WatchRequest,
)
from driftwatch.services.registry_resolver import UNKNOWN_REGISTRY, RegistryResolver, get_tag_candidates
from driftwatch.services.scheduler import SchedulerService, validate_crontab
from driftwatch.services.watchers import labels
from driftwatch.utils.debounce import Debouncer
from driftwatch.utils.error_handling import log_and_continue
from driftwatch.utils.image_name import parse_image_name
from driftwatch.utils.security import sanitize_log_message
from driftwatch.utils.version import parse as parse_semver
from driftwatch.utils.version import transform as transform_tag

logger = logging.getLogger(__name__)

# Delay before the first scan and the event listener after startup
START_WATCHER_DELAY_SECONDS = 1.0

# Debounce delay for scans caused by engine events
DEBOUNCED_WATCH_SECONDS = 5.0

WATCHED_EVENTS = ["create", "destroy", "start", "stop", "pause", "unpause", "die", "update"]


class DockerWatcherConfiguration(BaseModel):
    model_config = ConfigDict(extra="forbid")

    socket: str = "/var/run/docker.sock"
    host: Optional[str] = None
    port: int = Field(default=2375, ge=1, le=65535)
    cafile: Optional[str] = None
    certfile: Optional[str] = None
    keyfile: Optional[str] = None
    cron: str = "0 * * * *"
    watchbydefault: bool = True
    watchall: bool = False
    watchevents: bool = True
    watchatstart: bool = True

    @field_validator("cron")
    @classmethod
    def _check_cron(cls, value: str) -> str:
        return validate_crontab(value)


@dataclass
class RunningContainer:
    """Minimal engine view of a running container."""

    id: str
    name: str
    image_id: str


def get_container_name(raw: Dict[str, Any]) -> str:
    names = raw.get("Names") or []
    return names[0].lstrip("/") if names else raw.get("Id", "")[:12]


def get_repo_digest(image: Dict[str, Any]) -> Optional[str]:
    repo_digests = image.get("RepoDigests") or []
    if not repo_digests:
        return None
    return repo_digests[0].split("@", 1)[-1]


class DockerWatcher:
    """Watcher for one docker engine host.

    Args:
        name: Watcher name (``local`` by default)
        configuration: Raw watcher configuration
        store: Container store
        resolver: Registry resolver
        event_bus: Event bus
        scheduler: Shared cron scheduler (no cron job when None)
        client: Optional docker client (built from configuration when None)
        active_installs: Ids of containers with an install running; their
            stale records are kept until the install finishes
    """

    provider = "docker"

    def __init__(
        self,
        name: str,
        configuration: Optional[Dict[str, Any]],
        store: ContainerStore,
        resolver: RegistryResolver,
        event_bus: EventBus,
        scheduler: Optional[SchedulerService] = None,
        client: Optional[docker.DockerClient] = None,
        active_installs: Optional[AbstractSet[str]] = None,
    ) -> None:
        self.name = name.lower()
        try:
            self.configuration = DockerWatcherConfiguration.model_validate(configuration or {})
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration for watcher docker.{self.name}: {e}") from e
        self.store = store
        self.resolver = resolver
        self.event_bus = event_bus
        self.scheduler = scheduler
        self.client = client or self._create_client()
        self.active_installs = active_installs if active_installs is not None else set()

        self._scan_lock = asyncio.Lock()
        self._debouncer = Debouncer(DEBOUNCED_WATCH_SECONDS, self.watch_from_cron)
        self._partial_event_data = ""
        self._event_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._previous_records: Dict[str, Container] = {}
        self._watch_request_subscription: Optional[Subscription] = None
        self._events_stream = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def id(self) -> str:
        return self.name

    @property
    def job_id(self) -> str:
        return f"watcher-{self.name}"

    def _create_client(self) -> docker.DockerClient:
        configuration = self.configuration
        if configuration.host:
            tls = False
            if configuration.cafile or configuration.certfile:
                tls = TLSConfig(
                    client_cert=(configuration.certfile, configuration.keyfile)
                    if configuration.certfile else None,
                    ca_cert=configuration.cafile,
                    verify=configuration.cafile or False,
                )
            return docker.DockerClient(base_url=f"tcp://{configuration.host}:{configuration.port}", tls=tls)
        return docker.DockerClient(base_url=f"unix://{configuration.socket}")

    def mask_configuration(self) -> Dict[str, Any]:
        return self.configuration.model_dump(exclude_none=True)

    # Lifecycle

    def _spawn(self, coroutine) -> asyncio.Task:
        task = asyncio.create_task(coroutine)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _delayed(self, coroutine_function) -> None:
        await asyncio.sleep(START_WATCHER_DELAY_SECONDS)
        await coroutine_function()

    async def start(self) -> None:
        if self.scheduler is not None:
            self.scheduler.add_cron_job(
                self.job_id,
                self.watch_from_cron,
                self.configuration.cron,
                name=f"Docker watcher {self.name}",
            )
            logger.info(f"Watcher {self.name} - Cron scheduled ({self.configuration.cron})")

        if self.configuration.watchatstart:
            self._spawn(self._delayed(self.watch_from_cron))

        if self.configuration.watchevents:
            self._spawn(self._delayed(self.listen_docker_events))

        self._watch_request_subscription = self.event_bus.subscribe(
            TRIGGER_WATCH_REQUEST, self._on_watch_request
        )

    async def stop(self) -> None:
        if self.scheduler is not None:
            self.scheduler.remove_job(self.job_id)
        if self._watch_request_subscription is not None:
            self.event_bus.unsubscribe(self._watch_request_subscription)
            self._watch_request_subscription = None
        self._debouncer.cancel()
        if self._events_stream is not None:
            await asyncio.to_thread(self._events_stream.close)
            self._events_stream = None
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await asyncio.to_thread(self.client.close)
        logger.info(f"Watcher {self.name} stopped")

    def _on_watch_request(self, request: WatchRequest) -> None:
        if request.watcher is not None and request.watcher != self.name:
            return
        logger.info(f"Watcher {self.name} - Received watch request {request.request_id}")
        self._spawn(self.watch_from_cron(request_id=request.request_id))

    # Engine events

    async def listen_docker_events(self) -> None:
        """Stream engine events and process them in order."""
        logger.info(f"Watcher {self.name} - Listening to docker events")
        try:
            self._events_stream = await asyncio.to_thread(
                self.client.api.events,
                filters={"type": "container", "event": WATCHED_EVENTS},
                decode=False,
            )
        except DockerException as e:
            logger.warning(f"Watcher {self.name} - Unable to listen to Docker events ({e})")
            return

        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()

        def _pump(stream) -> None:
            # Blocking iteration; ends when the stream is closed
            try:
                for chunk in stream:
                    loop.call_soon_threadsafe(queue.put_nowait, chunk)
            except DockerException as e:
                logger.warning(f"Watcher {self.name} - Docker event stream ended ({e})")
            finally:
                loop.call_soon_threadsafe(queue.put_nowait, None)

        pump = loop.run_in_executor(None, _pump, self._events_stream)
        try:
            while True:
                chunk = await queue.get()
                if chunk is None:
                    break
                await self.on_docker_event(chunk)
        finally:
            await asyncio.gather(pump, return_exceptions=True)

    async def on_docker_event(self, chunk: Any) -> None:
        """Buffer an event stream chunk and process every complete line."""
        if isinstance(chunk, bytes):
            # Multi-byte characters may span chunks
            chunk = self._event_decoder.decode(chunk)
        self._partial_event_data += chunk

        while "\n" in self._partial_event_data:
            line, self._partial_event_data = self._partial_event_data.split("\n", 1)
            line = line.strip()
            if not line:
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                logger.warning(f"Watcher {self.name} - Skipping invalid event: {sanitize_log_message(line)}")
                continue
            await self._process_event(event)

    async def _process_event(self, event: Dict[str, Any]) -> None:
        action = event.get("Action") or event.get("status")
        container_id = event.get("id") or (event.get("Actor") or {}).get("ID")

        if action in ("create", "destroy"):
            self._debouncer.trigger()
            return

        if not container_id or self.store.get(container_id) is None:
            return
        try:
            inspect = await asyncio.to_thread(self.client.api.inspect_container, container_id)
        except DockerException as e:
            logger.debug(f"Watcher {self.name} - Failed to refresh container {container_id} ({e})")
            return

        new_status = (inspect.get("State") or {}).get("Status")
        if not new_status:
            return

        def _set_status(container: Container) -> Container:
            container.status = new_status
            return container

        stored = self.store.get(container_id)
        if stored is not None and stored.status != new_status:
            old_status = stored.status
            await self.store.modify(container_id, _set_status)
            logger.info(f"{full_name(stored)} - Status changed from {old_status} to {new_status}")

    # Scans

    async def watch_from_cron(self, request_id: Optional[str] = None) -> List[ContainerReport]:
        logger.info(f"Watcher {self.name} - Cron started ({self.configuration.cron})")
        reports = await self.watch(request_id=request_id)
        updates = sum(1 for report in reports if report.container.update_available)
        errors = sum(1 for report in reports if report.container.error is not None)
        logger.info(
            f"Watcher {self.name} - Cron finished ({len(reports)} containers watched, "
            f"{errors} errors, {updates} available updates)"
        )
        return reports

    async def watch(self, request_id: Optional[str] = None) -> List[ContainerReport]:
        """Scan the host and report every watched container."""
        async with self._scan_lock:
            await self.event_bus.publish(WATCHER_START, WatcherEvent(self.name, request_id))
            try:
                try:
                    containers = await self.get_containers()
                except Exception as e:
                    log_and_continue(
                        logger, e, f"Watcher {self.name} - Error when trying to get the list of the containers to watch"
                    )
                    containers = []

                reports = list(await asyncio.gather(*(self.watch_container(c) for c in containers)))
                await self.event_bus.publish(CONTAINER_REPORTS, reports)
                return reports
            finally:
                await self.event_bus.publish(WATCHER_STOP, WatcherEvent(self.name, request_id))

    async def get_containers(self) -> List[Container]:
        """List, filter and hydrate the containers to watch, then prune the store."""
        raw_containers = await asyncio.to_thread(
            self.client.api.containers, all=self.configuration.watchall
        )
        to_watch = [
            raw for raw in raw_containers
            if labels.is_container_to_watch(
                (raw.get("Labels") or {}).get(labels.WATCH), self.configuration.watchbydefault
            )
        ]

        containers: List[Container] = []
        results = await asyncio.gather(
            *(self.add_image_details_to_container(raw) for raw in to_watch),
            return_exceptions=True,
        )
        for raw, result in zip(to_watch, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                log_and_continue(logger, result, f"Watcher {self.name} - Unable to inspect container {get_container_name(raw)}")
            elif result is not None:
                containers.append(result)

        try:
            await self.prune_old_containers(containers)
        except DriftwatchError as e:
            log_and_continue(logger, e, f"Watcher {self.name} - Error when trying to prune the old containers")
        return containers

    async def add_image_details_to_container(self, raw: Dict[str, Any]) -> Optional[Container]:
        container_id = raw["Id"]

        try:
            inspect = await asyncio.to_thread(self.client.api.inspect_container, container_id)
        except NotFound:
            if self.store.get(container_id) is not None:
                logger.debug(f"Watcher {self.name} - Removing non-existent container {container_id} from store")
                await self.store.delete(container_id)
            return None

        if (inspect.get("State") or {}).get("Status") != "running":
            if self.store.get(container_id) is not None:
                logger.debug(f"Watcher {self.name} - Removing non-running container {container_id} from store")
                await self.store.delete(container_id)
            return None

        stored = self.store.get(container_id)
        if stored is not None and stored.error is None:
            if stored.status == "running":
                return stored
            await self.store.delete(container_id)

        container_labels = raw.get("Labels") or {}
        image = await asyncio.to_thread(self.client.api.inspect_image, raw.get("ImageID") or raw["Image"])

        image_reference = raw["Image"]
        if "sha256:" in image_reference:
            repo_tags = image.get("RepoTags") or []
            if not repo_tags:
                logger.warning(f"Watcher {self.name} - Cannot get a reliable tag for this image [{image_reference}]")
                return None
            image_reference = repo_tags[0]

        parsed = parse_image_name(image_reference)
        tag_name = parsed.tag or "latest"
        transform_tags = container_labels.get(labels.TAG_TRANSFORM)
        is_semver = parse_semver(transform_tag(transform_tags, tag_name)) is not None
        watch_digest = labels.is_digest_to_watch(container_labels.get(labels.WATCH_DIGEST), is_semver)
        container_name = get_container_name(raw)
        if not is_semver and not watch_digest:
            logger.warning(
                f"{self.name}_{container_name} - Image is not a semver and digest watching is disabled, "
                "so no update will be reported"
            )

        container = validate(
            {
                "id": container_id,
                "name": container_name,
                "status": raw.get("State") or "unknown",
                "watcher": self.name,
                "includeTags": container_labels.get(labels.TAG_INCLUDE),
                "excludeTags": container_labels.get(labels.TAG_EXCLUDE),
                "transformTags": transform_tags,
                "linkTemplate": container_labels.get(labels.LINK_TEMPLATE),
                "displayName": container_labels.get(labels.DISPLAY_NAME),
                "displayIcon": container_labels.get(labels.DISPLAY_ICON) or "mdi:docker",
                "triggerInclude": container_labels.get(labels.TRIGGER_INCLUDE),
                "triggerExclude": container_labels.get(labels.TRIGGER_EXCLUDE),
                "labels": container_labels,
                "image": {
                    "id": image["Id"],
                    "registry": {"url": parsed.domain},
                    "name": parsed.path,
                    "tag": {"value": tag_name, "semver": is_semver},
                    "digest": {"watch": watch_digest, "repo": get_repo_digest(image)},
                    "architecture": image.get("Architecture") or "unknown",
                    "os": image.get("Os") or "unknown",
                    "variant": image.get("Variant"),
                    "created": image.get("Created"),
                },
                "result": {"tag": tag_name},
            }
        )
        return self.resolver.normalize_container(container)

    async def prune_old_containers(self, new_containers: List[Container]) -> None:
        """Remove store records of containers that are no longer watched.

        A stale record whose name matches a surviving container hands its
        result and notification over to the survivor. A stale record is kept
        while an install is running for it; an ``info`` notification left by an
        interrupted install does not protect it.
        """
        survivor_ids = {container.id for container in new_containers}
        survivors_by_name = {container.name: container for container in new_containers}

        for stale in self.store.list({"watcher": self.name}, deduplicate=False):
            if stale.id in survivor_ids:
                continue

            if stale.id in self.active_installs:
                logger.info(f"{full_name(stale)} - Keeping record {stale.id} (install in progress)")
                continue

            survivor = survivors_by_name.get(stale.name)
            if survivor is not None:
                await self._transplant(stale, survivor)

            await self.store.delete(stale.id)
            logger.info(f"{full_name(stale)} - Pruned container {stale.id}")

    async def _transplant(self, stale: Container, survivor: Container) -> None:
        """Hand the result and notification of a replaced record to its survivor."""
        notification = stale.notification
        if notification is not None and notification.level == "info":
            # Marker of an install that no longer runs
            notification = None

        if self.store.get(survivor.id) is None:
            self._previous_records[survivor.id] = stale
            if survivor.notification is None:
                survivor.notification = notification
            return

        if notification is None:
            return

        def _inherit(container: Container) -> Container:
            if container.notification is None:
                container.notification = notification
            return container

        await self.store.modify(survivor.id, _inherit)

    async def watch_container(self, container: Container) -> ContainerReport:
        """Find the new version of a container, store it and report it."""
        container = container.model_copy(deep=True)
        container.result = None
        container.error = None
        logger.debug(f"{full_name(container)} - Start watching")

        try:
            container.result = await self.find_new_version(container)
            container = validate(container)
            report = await self.map_container_to_report(container)
            await self.event_bus.publish(CONTAINER_REPORT, report)
            return report
        except Exception as e:
            log_and_continue(logger, e, f"{full_name(container)} - Error when processing container {container.id}")
            container.error = ContainerError(message=str(e) or type(e).__name__)
            try:
                _, container = await self.store.upsert(container, merge=self._keep_notification)
            except DriftwatchError as store_error:
                log_and_continue(logger, store_error, f"{full_name(container)} - Unable to store the container error")
            return ContainerReport(container=container, changed=False)

    async def find_new_version(self, container: Container) -> ContainerResult:
        """Resolve the best remote tag (and digest when watched) for a container."""
        result = ContainerResult(tag=container.image.tag.value)
        if container.image.registry.name == UNKNOWN_REGISTRY:
            logger.debug(f"{full_name(container)} - Unknown registry, not checking for updates")
            return result

        registry = self.resolver.get_registry(container.image.registry.name)
        tags = await registry.get_tags(container.image)
        candidates = get_tag_candidates(container, tags)

        if container.image.digest.watch and container.image.digest.repo:
            # Digest of the best candidate (mongo:8 -> mongo:8.0.1) or of the current tag
            image_to_check = container.image.model_copy(deep=True)
            if candidates:
                image_to_check.tag.value = candidates[0]

            remote = await registry.get_image_manifest_digest(image_to_check)
            result.digest = remote.digest
            result.created = remote.created

            if remote.version == 2:
                local = await registry.get_image_manifest_digest(image_to_check, container.image.digest.repo)
                container.image.digest.value = local.digest
            else:
                # Legacy v1 image: the config image id is the reference
                image = await asyncio.to_thread(self.client.api.inspect_image, container.image.id)
                container.image.digest.value = (image.get("Config") or {}).get("Image") or None

        if candidates:
            result.tag = candidates[0]
        return result

    @staticmethod
    def _keep_notification(previous: Optional[Container], incoming: Container) -> Container:
        # Scans never write notifications; the stored one is always the latest
        if previous is not None:
            incoming.notification = previous.notification
        return incoming

    async def map_container_to_report(self, container: Container) -> ContainerReport:
        """Store the container and compute whether its result changed."""
        previous, stored = await self.store.upsert(container, merge=self._keep_notification)
        if previous is None:
            transplanted = self._previous_records.pop(container.id, None)
            if transplanted is None:
                logger.debug(f"{full_name(stored)} - Container watched for the first time")
                return ContainerReport(container=stored, changed=True)
            previous = transplanted
        changed = result_changed(previous, stored) and stored.update_available
        return ContainerReport(container=stored, changed=changed)

    async def find_running_container(self, name: str) -> Optional[RunningContainer]:
        """Find the running container with this exact name on the host."""
        raw_containers = await asyncio.to_thread(
            self.client.api.containers, filters={"name": name}
        )
        for raw in raw_containers:
            if get_container_name(raw) == name and raw.get("State") == "running":
                return RunningContainer(id=raw["Id"], name=name, image_id=raw.get("ImageID", ""))
        return None
