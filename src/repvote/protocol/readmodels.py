"""
repvote/protocol/readmodels.py

Periodically refreshed views over ledger state.

A ReadModel keeps the last value its loader produced successfully. A
refresh that fails with a TransportError leaves that value in place, so
readers see stale data rather than none. Settled notifications wake the
models of the affected poll for an immediate refresh.

Usage:
    registry = ReadModelRegistry(hub)
    results = registry.register(
        ReadModel("results", results_loader(gateway, poll_id)),
        poll_id=poll_id,
    )
    async with trio.open_nursery() as nursery:
        registry.start(nursery, interval=5.0)
        ...
        results.value    # {"results": [...], "winner": ..., ...}
"""

import logging
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import trio

from ..config import DEFAULT_REFRESH_INTERVAL
from ..errors import TransportError
from ..retry import RetryConfig, retry_read
from .notifications import NotificationHub, Settled

logger = logging.getLogger("repvote.protocol.readmodels")


Loader = Callable[[], Awaitable[Any]]


class ReadModel:
    """
    Last-known-good value of a loader.

    Args:
        name: Name used in logs
        loader: Async callable producing the current value
        initial: Value served before the first successful load
    """

    def __init__(self, name: str, loader: Loader, initial: Any = None):
        self.name = name
        self.loader = loader
        self.value = initial
        self.loaded = False
        self.last_refresh: Optional[float] = None
        self.last_error: Optional[BaseException] = None
        self.refresh_count = 0
        self.failure_count = 0
        self._wakeup = trio.Event()

    @property
    def is_stale(self) -> bool:
        """True when the latest refresh failed."""
        return self.last_error is not None

    async def refresh(self) -> Any:
        """Reload the value; keep the previous one on transport failure."""
        try:
            value = await self.loader()
        except TransportError as e:
            self.failure_count += 1
            self.last_error = e
            logger.warning(f"Refresh of {self.name} failed, serving last known value: {e}")
            return self.value

        self.value = value
        self.loaded = True
        self.last_error = None
        self.last_refresh = time.time()
        self.refresh_count += 1
        return value

    def invalidate(self) -> None:
        """Wake the refresh loop now."""
        self._wakeup.set()

    async def run(
        self,
        interval: float = DEFAULT_REFRESH_INTERVAL,
        task_status=trio.TASK_STATUS_IGNORED,
    ) -> None:
        """Refresh every ``interval`` seconds, or sooner when invalidated."""
        await self.refresh()
        task_status.started()
        while True:
            with trio.move_on_after(interval):
                await self._wakeup.wait()
            self._wakeup = trio.Event()
            await self.refresh()


# ============================================================================
# LOADERS
# ============================================================================

def results_loader(gateway: Any, poll_id: str, retry_config: Optional[RetryConfig] = None) -> Loader:
    """Tallies, winner and totals of one poll."""

    async def load() -> Dict[str, Any]:
        info = await retry_read("poll_info", gateway.get_poll_info, poll_id, config=retry_config)
        results = await retry_read("results", gateway.get_results, poll_id, config=retry_config)
        winner, winning_weight = await retry_read("winner", gateway.get_winner, poll_id, config=retry_config)
        return {
            "poll_id": poll_id,
            "results": list(results),
            "winner": winner,
            "winning_weight": winning_weight,
            "total_voters": info.total_voters,
            "total_weighted_votes": info.total_weighted_votes,
            "total_bet_amount": info.total_bet_amount,
            "is_active": info.is_active,
        }

    return load


def vote_status_loader(
    gateway: Any,
    poll_id: str,
    identity: str,
    retry_config: Optional[RetryConfig] = None,
) -> Loader:
    """Whether an identity voted on a poll, how, and whether it claimed."""

    async def load() -> Dict[str, Any]:
        vote = await retry_read("vote", gateway.get_vote, poll_id, identity, config=retry_config)
        claimed = await retry_read("has_claimed", gateway.has_claimed, poll_id, identity, config=retry_config)
        return {
            "poll_id": poll_id,
            "identity": identity,
            "has_voted": vote is not None,
            "vote": vote.to_dict() if vote is not None else None,
            "has_claimed": claimed,
        }

    return load


def leaderboard_loader(
    gateway: Any,
    identities: Callable[[], Iterable[str]],
    limit: Optional[int] = None,
    retry_config: Optional[RetryConfig] = None,
) -> Loader:
    """
    Reputation leaderboard.

    Identities with zero effective reputation are left out; the rest are
    sorted by effective reputation, highest first.
    """

    async def load() -> List[Dict[str, Any]]:
        entries = []
        for identity in identities():
            stats = await retry_read("user_stats", gateway.get_user_stats, identity, config=retry_config)
            if stats.effective_reputation > 0:
                entries.append(stats)
        entries.sort(key=lambda s: (-s.effective_reputation, s.identity))
        if limit is not None:
            entries = entries[:limit]
        return [
            {"rank": rank, **stats.to_dict()}
            for rank, stats in enumerate(entries, start=1)
        ]

    return load


# ============================================================================
# REGISTRY
# ============================================================================

class ReadModelRegistry:
    """
    Read models grouped by poll, invalidated by Settled notifications.

    Models registered without a poll (e.g. the leaderboard) are invalidated
    by every Settled event.
    """

    def __init__(self, hub: Optional[NotificationHub] = None):
        self.hub = hub
        self._models: Dict[Optional[str], List[ReadModel]] = {}
        self.invalidations = 0
        if hub is not None:
            hub.add_listener(self._on_event)

    def register(self, model: ReadModel, poll_id: Optional[str] = None) -> ReadModel:
        self._models.setdefault(poll_id, []).append(model)
        return model

    def unregister(self, model: ReadModel) -> None:
        for models in self._models.values():
            if model in models:
                models.remove(model)

    def models_for(self, poll_id: Optional[str]) -> List[ReadModel]:
        return list(self._models.get(poll_id, []))

    def all_models(self) -> List[ReadModel]:
        return [model for models in self._models.values() for model in models]

    def invalidate_poll(self, poll_id: str) -> int:
        """Invalidate the poll's models and the poll-independent ones."""
        models = self.models_for(poll_id) + self.models_for(None)
        for model in models:
            model.invalidate()
        self.invalidations += 1
        logger.debug(f"Invalidated {len(models)} read models for {poll_id}")
        return len(models)

    def _on_event(self, event: Any) -> None:
        if isinstance(event, Settled):
            self.invalidate_poll(event.poll_id)

    def start(self, nursery: trio.Nursery, interval: float = DEFAULT_REFRESH_INTERVAL) -> None:
        """Run every registered model's refresh loop in the nursery."""
        for model in self.all_models():
            nursery.start_soon(model.run, interval)

    def close(self) -> None:
        if self.hub is not None:
            self.hub.remove_listener(self._on_event)
