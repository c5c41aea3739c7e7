"""Live output of install scripts.

Each install run opens a session keyed by container id and name. Lines are
buffered so that late followers replay everything from the start, and
finished sessions stay available for a retention window.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional

from driftwatch.utils.security import sanitize_log_message

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_SECONDS = 300.0


@dataclass
class ScriptOutputLine:
    stream: str
    line: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class ScriptOutputSession:
    """Output of one install script run."""

    container_id: str
    container_name: str
    lines: List[ScriptOutputLine] = field(default_factory=list)
    exit_code: Optional[int] = None
    done: bool = False
    finished_at: Optional[float] = None
    _changed: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    def _notify(self) -> None:
        self._changed.set()
        self._changed = asyncio.Event()


class ScriptOutputRegistry:
    """Sessions of running and recently finished install scripts."""

    def __init__(self, retention_seconds: float = DEFAULT_RETENTION_SECONDS) -> None:
        self.retention_seconds = retention_seconds
        self._sessions: Dict[str, ScriptOutputSession] = {}

    def open(self, container_id: str, container_name: str) -> ScriptOutputSession:
        """Start a new session, replacing any previous one for the container."""
        self.purge_expired()
        session = ScriptOutputSession(container_id=container_id, container_name=container_name)
        self._sessions[container_id] = session
        return session

    def append(self, session: ScriptOutputSession, stream: str, line: str) -> None:
        session.lines.append(ScriptOutputLine(stream=stream, line=line))
        logger.debug(f"[{session.container_name}] {stream}: {sanitize_log_message(line)}")
        session._notify()

    def close(self, session: ScriptOutputSession, exit_code: Optional[int] = None) -> None:
        session.exit_code = exit_code
        session.done = True
        session.finished_at = time.time()
        session._notify()

    def get(self, key: str) -> Optional[ScriptOutputSession]:
        """Get the latest session by container id or name."""
        self.purge_expired()
        session = self._sessions.get(key)
        if session is not None:
            return session
        by_name = [s for s in self._sessions.values() if s.container_name == key]
        return by_name[-1] if by_name else None

    async def follow(self, key: str) -> AsyncIterator[ScriptOutputLine]:
        """Yield buffered lines, then live ones until the session ends."""
        session = self.get(key)
        if session is None:
            return
        position = 0
        while True:
            changed = session._changed
            while position < len(session.lines):
                yield session.lines[position]
                position += 1
            if session.done:
                return
            await changed.wait()

    def purge_expired(self) -> None:
        now = time.time()
        expired = [
            container_id
            for container_id, session in self._sessions.items()
            if session.done
            and session.finished_at is not None
            and now - session.finished_at > self.retention_seconds
        ]
        for container_id in expired:
            del self._sessions[container_id]
