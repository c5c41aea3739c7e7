"""Store version tracking and data migration."""

import logging
from typing import Optional

from sqlalchemy import select

from driftwatch.models.app_state import AppState
from driftwatch.services.container_store import ContainerStore

logger = logging.getLogger(__name__)

STORE_VERSION_KEY = "version"


def _major(version: Optional[str]) -> Optional[str]:
    if not version:
        return None
    return version.lstrip("v").split(".", 1)[0]


async def migrate(store: ContainerStore, from_version: Optional[str], to_version: Optional[str]) -> bool:
    """Migrate stored data between application versions.

    Containers are wiped when the major version changes, since their documents
    may not match the current schema.

    Returns:
        True if the collection was reset
    """
    logger.info(f"Migrate data from version {from_version} to version {to_version}")
    from_major = _major(from_version)
    to_major = _major(to_version)
    if from_major is None or to_major is None or from_major == to_major:
        return False

    logger.info("Incompatible state found; reset")
    deleted = await store.delete_all()
    logger.info(f"Removed {deleted} containers from the store")
    return True


async def get_store_version(store: ContainerStore) -> Optional[str]:
    if store.session_factory is None:
        return None
    async with store.session_factory() as session:
        result = await session.execute(select(AppState).where(AppState.key == STORE_VERSION_KEY))
        state = result.scalar_one_or_none()
        return state.value if state else None


async def set_store_version(store: ContainerStore, version: str) -> None:
    if store.session_factory is None:
        return
    async with store.session_factory() as session:
        await session.merge(AppState(key=STORE_VERSION_KEY, value=version))
        await session.commit()


async def migrate_to_current(store: ContainerStore, current_version: str) -> None:
    """Run ``migrate`` from the persisted version and record the current one."""
    previous_version = await get_store_version(store)
    if previous_version != current_version:
        await migrate(store, previous_version, current_version)
        await set_store_version(store, current_version)
