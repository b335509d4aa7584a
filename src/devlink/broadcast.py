"""Fan-out of the latest pairing artifact to live observers.

Process-scoped: constructed once and handed to the orchestrator and the
HTTP server. Caches exactly one artifact for late joiners. Publishing
never blocks on a slow subscriber; a full subscriber queue drops its
oldest update.
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from devlink.linking.qr_renderer import render_artifact
from devlink.linking.session import PairingArtifact

logger = logging.getLogger(__name__)

Renderer = Callable[[str, str, int], str]


@dataclass(frozen=True)
class ArtifactUpdate:
    """One push to subscribers: raw artifact plus its display payload."""

    session_id: str
    kind: str
    value: str
    display: str

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "session_id": self.session_id,
            "kind": self.kind,
            "value": self.value,
            "display": self.display,
        }


class Subscriber:
    """Handle for one live observer.

    Updates are read with get(); None means the channel closed.
    """

    def __init__(self, subscriber_id: int, queue_size: int):
        self.subscriber_id = subscriber_id
        self._queue: asyncio.Queue[Optional[ArtifactUpdate]] = asyncio.Queue(
            maxsize=queue_size
        )
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self, update: Optional[ArtifactUpdate]) -> None:
        """Queue an update without blocking, dropping the oldest if full."""
        if self._closed:
            return
        if self._queue.full():
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
            logger.debug(f"Subscriber {self.subscriber_id} lagging, dropped update")
        self._queue.put_nowait(update)

    def discard(self, session_id: str) -> int:
        """Drop queued updates that belong to session_id.

        Returns:
            Number of updates dropped.
        """
        kept = []
        dropped = 0
        while True:
            try:
                update = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if update is not None and update.session_id == session_id:
                dropped += 1
            else:
                kept.append(update)
        for update in kept:
            self._queue.put_nowait(update)
        return dropped

    async def get(self) -> Optional[ArtifactUpdate]:
        """Wait for the next update. Returns None once closed."""
        return await self._queue.get()

    def close(self) -> None:
        """Wake the reader with an end-of-stream marker."""
        if self._closed:
            return
        self.deliver(None)
        self._closed = True


class BroadcastChannel:
    """Pairing artifact broadcast with late-join catch-up."""

    def __init__(
        self,
        queue_size: int = 16,
        code_group_size: int = 4,
        renderer: Renderer = render_artifact,
    ):
        """Initialize channel.

        Args:
            queue_size: Buffered updates per subscriber.
            code_group_size: Grouping for pairing code display.
            renderer: Turns (kind, value, group_size) into a display payload.
        """
        self._queue_size = max(1, queue_size)
        self._code_group_size = code_group_size
        self._renderer = renderer
        self._subscribers: dict[int, Subscriber] = {}
        self._ids = itertools.count(1)
        self._current: Optional[ArtifactUpdate] = None
        self._closed = False

    @property
    def current(self) -> Optional[ArtifactUpdate]:
        """The cached artifact, if any."""
        return self._current

    def subscribe(self) -> Subscriber:
        """Register an observer.

        The cached artifact, if any, is delivered immediately.
        """
        subscriber = Subscriber(next(self._ids), self._queue_size)
        if self._closed:
            subscriber.close()
            return subscriber

        self._subscribers[subscriber.subscriber_id] = subscriber
        if self._current is not None:
            subscriber.deliver(self._current)
        logger.debug(
            f"Subscriber {subscriber.subscriber_id} added "
            f"({len(self._subscribers)} active)"
        )
        return subscriber

    def unsubscribe(self, subscriber: Subscriber) -> None:
        """Remove an observer. Safe to call more than once."""
        removed = self._subscribers.pop(subscriber.subscriber_id, None)
        subscriber.close()
        if removed is not None:
            logger.debug(
                f"Subscriber {subscriber.subscriber_id} removed "
                f"({len(self._subscribers)} active)"
            )

    def publish(self, artifact: PairingArtifact) -> int:
        """Render an artifact and push it to every subscriber.

        Rendering failure is logged and the cached artifact is left as is.

        Returns:
            Number of subscribers the update was queued for.
        """
        if self._closed:
            return 0

        try:
            display = self._renderer(
                artifact.kind, artifact.value, self._code_group_size
            )
        except Exception as e:
            logger.error(
                f"Failed to render {artifact.kind} artifact for "
                f"{artifact.session_id[:8]}...: {e}"
            )
            return 0

        update = ArtifactUpdate(
            session_id=artifact.session_id,
            kind=artifact.kind,
            value=artifact.value,
            display=display,
        )
        self._current = update

        delivered = 0
        for subscriber in list(self._subscribers.values()):
            try:
                subscriber.deliver(update)
                delivered += 1
            except Exception as e:
                logger.warning(
                    f"Failed to queue update for subscriber "
                    f"{subscriber.subscriber_id}: {e}"
                )
        return delivered

    def clear(self, session_id: str) -> None:
        """Forget everything still pending for a terminated session.

        Drops the cached artifact if it belongs to session_id, and any of
        its updates still queued for subscribers.
        """
        if self._current is not None and self._current.session_id == session_id:
            self._current = None
        for subscriber in list(self._subscribers.values()):
            dropped = subscriber.discard(session_id)
            if dropped:
                logger.debug(
                    f"Dropped {dropped} stale update(s) for subscriber "
                    f"{subscriber.subscriber_id}"
                )

    def close(self) -> None:
        """Disconnect all subscribers. Used at process shutdown."""
        self._closed = True
        self._current = None
        subscribers = list(self._subscribers.values())
        self._subscribers.clear()
        for subscriber in subscribers:
            subscriber.close()
        logger.info("Broadcast channel closed")

    def __len__(self) -> int:
        """Return number of live subscribers."""
        return len(self._subscribers)
