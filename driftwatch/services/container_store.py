"""Authoritative collection of watched containers.

Records are held in memory as validated camelCase documents and written
through to the ``containers`` table when a session factory is configured.
Read-modify-write sequences are serialized per (name, watcher).
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple, Union

from sqlalchemy import delete as sql_delete
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from driftwatch.exceptions import ContainerValidationError
from driftwatch.models.container import ContainerDocument
from driftwatch.schemas.container import Container, full_name, validate
from driftwatch.services.event_bus import (
    CONTAINER_ADDED,
    CONTAINER_REMOVED,
    CONTAINER_UPDATED,
    EventBus,
)
from driftwatch.utils.version import parse as parse_semver
from driftwatch.utils.version import transform as transform_tag

logger = logging.getLogger(__name__)

Merge = Callable[[Optional[Container], Container], Container]


def _lookup(document: Dict[str, Any], dotted_key: str) -> Any:
    node: Any = document
    for part in dotted_key.split("."):
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return node


def _matches(document: Dict[str, Any], query: Optional[Dict[str, Any]]) -> bool:
    if not query:
        return True
    return all(_lookup(document, key) == value for key, value in query.items())


def _is_preferred(candidate: Container, current: Container) -> bool:
    """Return True if ``candidate`` should replace ``current`` in the listing.

    Order: running, then no pending update, then newest semver tag, then a
    success notification. Ties keep ``current``.
    """
    candidate_running = candidate.status == "running"
    current_running = current.status == "running"
    if candidate_running != current_running:
        return candidate_running

    if candidate.update_available != current.update_available:
        return not candidate.update_available

    candidate_version = parse_semver(transform_tag(candidate.transform_tags, candidate.image.tag.value))
    current_version = parse_semver(transform_tag(current.transform_tags, current.image.tag.value))
    if candidate_version is not None and current_version is not None:
        comparison = candidate_version.compare(current_version)
        if comparison != 0:
            return comparison > 0

    candidate_success = candidate.notification is not None and candidate.notification.level == "success"
    current_success = current.notification is not None and current.notification.level == "success"
    if candidate_success != current_success:
        return candidate_success
    return False


def _sort_key(container: Container) -> Tuple[str, str, str, str]:
    return (
        container.watcher,
        container.image.registry.name,
        container.name,
        container.image.tag.value,
    )


class ContainerStore:
    """Container records keyed by runtime id.

    Args:
        event_bus: Bus receiving container-added/updated/removed events
        session_factory: Optional SQLAlchemy async session factory for
            write-through persistence
    """

    def __init__(
        self,
        event_bus: EventBus,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ) -> None:
        self.event_bus = event_bus
        self.session_factory = session_factory
        self._documents: Dict[str, Dict[str, Any]] = {}
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._lock_users: Dict[Tuple[str, str], int] = {}

    @asynccontextmanager
    async def _locked(self, container: Container) -> AsyncIterator[None]:
        """Hold the (name, watcher) lock; it is dropped once nobody uses it."""
        key = (container.name, container.watcher)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                del self._locks[key]

    # Reads

    def get(self, container_id: str) -> Optional[Container]:
        """Get a container by runtime id (computed fields recomputed)."""
        document = self._documents.get(container_id)
        if document is None:
            return None
        return validate(document)

    def list(
        self,
        query: Optional[Dict[str, Any]] = None,
        deduplicate: bool = True,
    ) -> List[Container]:
        """List containers matching ``query``.

        ``query`` maps dotted camelCase paths (``watcher``,
        ``image.registry.name``) to the expected values. With ``deduplicate``,
        one record is kept per (name, watcher, registry).
        """
        containers = [
            validate(document)
            for document in self._documents.values()
            if _matches(document, query)
        ]

        if deduplicate:
            unique: Dict[Tuple[str, str, str], Container] = {}
            for container in containers:
                key = (container.name, container.watcher, container.image.registry.name)
                kept = unique.get(key)
                if kept is None or _is_preferred(container, kept):
                    unique[key] = container
            containers = list(unique.values())

        return sorted(containers, key=_sort_key)

    # Writes

    async def insert(self, container: Union[Container, Dict[str, Any]]) -> Container:
        """Insert a new container.

        Raises:
            ContainerValidationError: If the container is malformed
        """
        to_save = validate(container)
        async with self._locked(to_save):
            self._documents[to_save.id] = to_save.to_document()
            await self._persist(to_save)
        await self.event_bus.publish(CONTAINER_ADDED, to_save)
        return to_save

    async def update(self, container: Union[Container, Dict[str, Any]]) -> Container:
        """Replace the record sharing the container id (or insert it).

        Raises:
            ContainerValidationError: If the container is malformed
        """
        to_save = validate(container)
        async with self._locked(to_save):
            self._documents[to_save.id] = to_save.to_document()
            await self._persist(to_save)
        await self.event_bus.publish(CONTAINER_UPDATED, to_save)
        return to_save

    async def upsert(
        self,
        container: Union[Container, Dict[str, Any]],
        merge: Optional[Merge] = None,
    ) -> Tuple[Optional[Container], Container]:
        """Atomically read the current record, merge and write.

        ``merge(previous, incoming)`` returns the container to store.

        Returns:
            Tuple of (previous record or None, stored record)
        """
        incoming = validate(container)
        async with self._locked(incoming):
            previous = self.get(incoming.id)
            to_save = validate(merge(previous, incoming)) if merge else incoming
            self._documents[to_save.id] = to_save.to_document()
            await self._persist(to_save)
        await self.event_bus.publish(
            CONTAINER_ADDED if previous is None else CONTAINER_UPDATED, to_save
        )
        return previous, to_save

    async def modify(
        self,
        container_id: str,
        mutator: Callable[[Container], Container],
    ) -> Optional[Container]:
        """Apply ``mutator`` to the latest version of a record and store it.

        Returns:
            The stored container, or None if no record has this id
        """
        current = self.get(container_id)
        if current is None:
            return None
        async with self._locked(current):
            latest = self.get(container_id)
            if latest is None:
                return None
            to_save = validate(mutator(latest))
            self._documents[to_save.id] = to_save.to_document()
            await self._persist(to_save)
        await self.event_bus.publish(CONTAINER_UPDATED, to_save)
        return to_save

    async def delete(self, container_id: str) -> bool:
        """Delete a container by id.

        Returns:
            True if the record was removed
        """
        container = self.get(container_id)
        if container is None:
            logger.warning(f"Container {container_id} not found for deletion")
            return False

        async with self._locked(container):
            self._documents.pop(container_id, None)
            await self._forget(container_id)
        await self.event_bus.publish(CONTAINER_REMOVED, container)

        if container_id in self._documents:
            logger.warning(f"Container {container_id} still exists after deletion attempt")
            return False
        logger.debug(f"{full_name(container)} - Container {container_id} deleted")
        return True

    async def delete_all(self) -> int:
        deleted = 0
        for container in self.list(deduplicate=False):
            if await self.delete(container.id):
                deleted += 1
        return deleted

    # Persistence

    async def load(self) -> int:
        """Restore records from the database.

        Invalid documents are logged and skipped.

        Returns:
            Number of records loaded
        """
        if self.session_factory is None:
            return 0

        async with self.session_factory() as session:
            result = await session.execute(select(ContainerDocument))
            rows = result.scalars().all()

        loaded = 0
        for row in rows:
            try:
                container = validate(row.data)
            except ContainerValidationError as e:
                logger.warning(f"Skipping invalid stored container {row.id}: {e}")
                continue
            self._documents[container.id] = container.to_document()
            loaded += 1
        logger.info(f"Loaded {loaded} containers from the store")
        return loaded

    async def _persist(self, container: Container) -> None:
        if self.session_factory is None:
            return
        async with self.session_factory() as session:
            await session.merge(
                ContainerDocument(
                    id=container.id,
                    name=container.name,
                    watcher=container.watcher,
                    data=container.to_document(),
                )
            )
            await session.commit()

    async def _forget(self, container_id: str) -> None:
        if self.session_factory is None:
            return
        async with self.session_factory() as session:
            await session.execute(
                sql_delete(ContainerDocument).where(ContainerDocument.id == container_id)
            )
            await session.commit()
