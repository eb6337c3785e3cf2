"""
repvote/protocol/notifications.py

Poll notifications and watch streams.

Ledgers publish VoteRecorded, the factory publishes PollCreated and the
settlement machines publish Settled / ClaimPaid. Subscribers receive
events on trio memory channels, per poll or globally.

``PollWatch`` is the single abstraction for "keep me up to date on this
poll": a lazy, restartable, unbounded async sequence. It rides on hub
notifications when a hub is available and falls back to interval polling
of a snapshot function otherwise.

Usage:
    hub = NotificationHub()
    async for event in PollWatch(poll_id, hub=hub):
        print(event.to_dict())
"""

import logging
import time
from dataclasses import dataclass, field, asdict
from typing import Any, Awaitable, Callable, Dict, List, Optional

import trio

from ..config import DEFAULT_NOTIFICATION_BUFFER, DEFAULT_REFRESH_INTERVAL
from ..errors import TransportError

logger = logging.getLogger("repvote.protocol.notifications")


GLOBAL_TOPIC = "*"


# ============================================================================
# EVENTS
# ============================================================================

@dataclass(frozen=True)
class PollCreated:
    poll_id: str
    question: str
    creator: str
    end_time: int
    timestamp: int = field(default_factory=lambda: int(time.time()))
    event_type = "poll_created"

    def to_dict(self) -> dict:
        return {"type": self.event_type, **asdict(self)}


@dataclass(frozen=True)
class VoteRecorded:
    poll_id: str
    identity: str
    option: int
    credits: int
    weight: int
    timestamp: int
    event_type = "vote_recorded"

    def to_dict(self) -> dict:
        return {"type": self.event_type, **asdict(self)}


@dataclass(frozen=True)
class Settled:
    """A vote or claim is final; read-models of the poll are stale."""
    poll_id: str
    identity: str
    kind: str                         # "vote" or "claim"
    timestamp: int = field(default_factory=lambda: int(time.time()))
    event_type = "settled"

    def to_dict(self) -> dict:
        return {"type": self.event_type, **asdict(self)}


@dataclass(frozen=True)
class ClaimPaid:
    poll_id: str
    identity: str
    amount: int
    timestamp: int
    event_type = "claim_paid"

    def to_dict(self) -> dict:
        return {"type": self.event_type, **asdict(self)}


@dataclass(frozen=True)
class SnapshotChanged:
    """Synthetic notification produced by polling fallback."""
    poll_id: str
    previous: Any
    current: Any
    timestamp: int = field(default_factory=lambda: int(time.time()))
    event_type = "snapshot_changed"

    def to_dict(self) -> dict:
        return {"type": self.event_type, **asdict(self)}


# ============================================================================
# HUB
# ============================================================================

class NotificationHub:
    """
    In-process fan-out of poll notifications.

    ``publish`` never blocks: a subscriber whose buffer is full misses the
    event (logged), so a slow reader cannot stall a ledger writer.
    """

    def __init__(self, buffer_size: int = DEFAULT_NOTIFICATION_BUFFER):
        self.buffer_size = buffer_size
        self._channels: Dict[str, List[trio.MemorySendChannel]] = {}
        self._listeners: List[Callable[[Any], None]] = []
        self.published = 0
        self.dropped = 0

    def subscribe(self, poll_id: Optional[str] = None) -> trio.MemoryReceiveChannel:
        """
        Open a subscription.

        Args:
            poll_id: Poll to follow, or None for every poll

        Returns:
            Receive channel; close it to unsubscribe
        """
        send_channel, receive_channel = trio.open_memory_channel(self.buffer_size)
        self._channels.setdefault(poll_id or GLOBAL_TOPIC, []).append(send_channel)
        return receive_channel

    def add_listener(self, callback: Callable[[Any], None]) -> None:
        """Register a synchronous callback invoked for every event."""
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[Any], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def subscriber_count(self, poll_id: Optional[str] = None) -> int:
        return len(self._channels.get(poll_id or GLOBAL_TOPIC, []))

    def publish(self, event: Any) -> None:
        """Deliver an event to poll subscribers, global subscribers and listeners."""
        self.published += 1
        topics = [event.poll_id, GLOBAL_TOPIC]
        for topic in topics:
            channels = self._channels.get(topic)
            if not channels:
                continue
            for channel in list(channels):
                try:
                    channel.send_nowait(event)
                except trio.WouldBlock:
                    self.dropped += 1
                    logger.warning(f"Subscriber buffer full on {topic}, dropped {event.event_type}")
                except (trio.BrokenResourceError, trio.ClosedResourceError):
                    channels.remove(channel)
                    logger.debug(f"Pruned closed subscriber on {topic}")

        for callback in list(self._listeners):
            try:
                callback(event)
            except Exception as e:
                logger.warning(f"Notification listener error: {e}")


# ============================================================================
# WATCH STREAM
# ============================================================================

class PollWatch:
    """
    Lazy, restartable, unbounded sequence of poll state changes.

    Nothing is subscribed until iteration starts and every ``async for``
    starts a fresh subscription, so one PollWatch can be iterated again
    after a consumer stops.

    Args:
        poll_id: Poll to follow
        hub: Notification hub (push mode)
        snapshot: Async callable returning a comparable poll snapshot,
            used when no hub is given (polling mode)
        interval: Polling interval in seconds
    """

    def __init__(
        self,
        poll_id: str,
        hub: Optional[NotificationHub] = None,
        snapshot: Optional[Callable[[], Awaitable[Any]]] = None,
        interval: float = DEFAULT_REFRESH_INTERVAL,
    ):
        if hub is None and snapshot is None:
            raise ValueError("PollWatch needs a hub or a snapshot function")
        self.poll_id = poll_id
        self.hub = hub
        self.snapshot = snapshot
        self.interval = interval

    def __aiter__(self):
        if self.hub is not None:
            return self._follow_hub()
        return self._poll_snapshots()

    async def _follow_hub(self):
        receive_channel = self.hub.subscribe(self.poll_id)
        async with receive_channel:
            async for event in receive_channel:
                yield event

    async def _poll_snapshots(self):
        previous = await self._read_snapshot(None)
        while True:
            await trio.sleep(self.interval)
            current = await self._read_snapshot(previous)
            if current != previous:
                yield SnapshotChanged(poll_id=self.poll_id, previous=previous, current=current)
                previous = current

    async def _read_snapshot(self, last_known: Any) -> Any:
        try:
            return await self.snapshot()
        except TransportError as e:
            logger.warning(f"Snapshot read failed for {self.poll_id}, keeping last value: {e}")
            return last_known


def watch_poll(
    poll_id: str,
    hub: Optional[NotificationHub] = None,
    snapshot: Optional[Callable[[], Awaitable[Any]]] = None,
    interval: float = DEFAULT_REFRESH_INTERVAL,
) -> PollWatch:
    """Stream of state changes for a poll (see PollWatch)."""
    return PollWatch(poll_id, hub=hub, snapshot=snapshot, interval=interval)
