"""In-process event bus connecting watchers, the store and triggers."""

import asyncio
import inspect
import itertools
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

CONTAINER_REPORT = "container-report"
CONTAINER_REPORTS = "container-reports"
CONTAINER_ADDED = "container-added"
CONTAINER_UPDATED = "container-updated"
CONTAINER_REMOVED = "container-removed"
WATCHER_START = "watcher-start"
WATCHER_STOP = "watcher-stop"
TRIGGER_WATCH_REQUEST = "trigger-watch-request"

TOPICS = frozenset(
    {
        CONTAINER_REPORT,
        CONTAINER_REPORTS,
        CONTAINER_ADDED,
        CONTAINER_UPDATED,
        CONTAINER_REMOVED,
        WATCHER_START,
        WATCHER_STOP,
        TRIGGER_WATCH_REQUEST,
    }
)

Handler = Callable[[Any], Union[Awaitable[None], None]]

_sequence = itertools.count()


@dataclass(frozen=True)
class Subscription:
    """Handle returned by ``EventBus.subscribe``; pass it to ``unsubscribe``."""

    topic: str
    handler: Handler
    order: int = 100
    seq: int = field(default_factory=lambda: next(_sequence))


@dataclass
class WatchRequest:
    """Payload of ``trigger-watch-request``.

    ``watcher`` addresses one watcher by name (None means all watchers).
    ``request_id`` is echoed on the matching ``watcher-stop``.
    """

    request_id: str
    watcher: Optional[str] = None


@dataclass
class WatcherEvent:
    """Payload of ``watcher-start`` / ``watcher-stop``."""

    watcher: str
    request_id: Optional[str] = None


class EventBus:
    """Topic-based async pub/sub.

    Handlers run sequentially in ``order`` (then subscription order). A failing
    handler is logged and does not prevent the others from running.
    """

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = defaultdict(list)

    def subscribe(self, topic: str, handler: Handler, order: int = 100) -> Subscription:
        if topic not in TOPICS:
            raise ValueError(f"Unknown event topic '{topic}'")
        subscription = Subscription(topic=topic, handler=handler, order=order)
        subscribers = self._subscriptions[topic]
        subscribers.append(subscription)
        subscribers.sort(key=lambda s: (s.order, s.seq))
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._subscriptions.get(subscription.topic, [])
        if subscription in subscribers:
            subscribers.remove(subscription)

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscriptions.get(topic, []))

    async def publish(self, topic: str, payload: Any = None) -> None:
        """Deliver a payload to every handler of ``topic``."""
        if topic not in TOPICS:
            raise ValueError(f"Unknown event topic '{topic}'")

        # Copy: handlers may unsubscribe while being called
        for subscription in list(self._subscriptions.get(topic, [])):
            try:
                outcome = subscription.handler(payload)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.error(f"Error in '{topic}' event handler: {e}", exc_info=True)

    async def wait_for(
        self,
        topic: str,
        predicate: Callable[[Any], bool],
        timeout: float,
        after_subscribe: Optional[Callable[[], Awaitable[Any]]] = None,
    ) -> Any:
        """Wait for the first payload on ``topic`` matching ``predicate``.

        ``after_subscribe`` runs once the listener is in place (typically the
        publish of the request being answered). The temporary listener is
        removed whether the wait succeeds, times out or is cancelled.

        Raises:
            asyncio.TimeoutError: If no matching payload arrives in time
        """
        future: asyncio.Future = asyncio.get_running_loop().create_future()

        def _listener(payload: Any) -> None:
            if not future.done() and predicate(payload):
                future.set_result(payload)

        subscription = self.subscribe(topic, _listener)
        try:
            if after_subscribe is not None:
                await after_subscribe()
            return await asyncio.wait_for(future, timeout=timeout)
        finally:
            self.unsubscribe(subscription)
