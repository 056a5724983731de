"""Process-wide event bus for communication between agents.

Any module can publish an event with :func:`publish` and receive future
events through a :class:`Subscription` obtained from :func:`subscribe`.
A subscriber that falls more than the bus capacity behind loses the oldest
events; its next receive raises :class:`Lagged` with the number skipped.
"""

from __future__ import annotations

import asyncio
import threading
import weakref
from collections import deque
from dataclasses import dataclass
from typing import Optional, Union

CAPACITY = 64


@dataclass(frozen=True)
class ResearchCompleted:
    """A background research task finished (success or failure)."""

    topic: str
    task_id: str
    success: bool


@dataclass(frozen=True)
class ResearchRequested:
    """The planner decided the user's message requires deep research."""

    topic: str
    url: Optional[str] = None


@dataclass(frozen=True)
class FollowupTriggered:
    """The follow-up worker marked a task as needing attention."""

    source_timestamp: str


@dataclass(frozen=True)
class PersonaUpdated:
    """Persona objectives were updated after reflection."""

    new_objectives: tuple[str, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "new_objectives", tuple(self.new_objectives))


AgentEvent = Union[ResearchCompleted, ResearchRequested, FollowupTriggered, PersonaUpdated]


class Lagged(Exception):
    """Raised by a receive when older events were dropped for a slow subscriber."""

    def __init__(self, skipped: int) -> None:
        super().__init__(f"receiver lagged behind by {skipped} event(s)")
        self.skipped = skipped


_EMPTY = object()


def _wake(future: asyncio.Future) -> None:
    if not future.done():
        future.set_result(None)


class Subscription:
    """Receiving end of the bus; sees only events published after it was created."""

    def __init__(self, capacity: int) -> None:
        self._capacity = capacity
        self._queue: deque[AgentEvent] = deque()
        self._skipped = 0
        self._lock = threading.Lock()
        self._waiters: list[tuple[asyncio.AbstractEventLoop, asyncio.Future]] = []

    def _deliver(self, event: AgentEvent) -> None:
        with self._lock:
            if len(self._queue) >= self._capacity:
                self._queue.popleft()
                self._skipped += 1
            self._queue.append(event)
            waiters, self._waiters = self._waiters, []
        for loop, future in waiters:
            try:
                loop.call_soon_threadsafe(_wake, future)
            except RuntimeError:
                # The waiting loop has been closed; nobody is left to wake.
                pass

    def _pop_locked(self):
        if self._skipped:
            skipped, self._skipped = self._skipped, 0
            raise Lagged(skipped)
        if self._queue:
            return self._queue.popleft()
        return _EMPTY

    def try_recv(self) -> Optional[AgentEvent]:
        """Return the next pending event, or None when nothing is queued."""
        with self._lock:
            item = self._pop_locked()
        return None if item is _EMPTY else item

    async def recv(self) -> AgentEvent:
        """Wait for and return the next event."""
        loop = asyncio.get_running_loop()
        while True:
            with self._lock:
                item = self._pop_locked()
                if item is not _EMPTY:
                    return item
                future = loop.create_future()
                self._waiters.append((loop, future))
            await future

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> AgentEvent:
        return await self.recv()


class EventBus:
    """Broadcast channel: every subscription receives every event."""

    def __init__(self, capacity: int = CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._capacity = capacity
        self._subscriptions: "weakref.WeakSet[Subscription]" = weakref.WeakSet()
        self._lock = threading.Lock()

    def publish(self, event: AgentEvent) -> None:
        """Send an event to all live subscribers; dropped if there are none."""
        with self._lock:
            subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            subscription._deliver(event)

    def subscribe(self) -> Subscription:
        """Create a subscription that receives events published from now on."""
        subscription = Subscription(self._capacity)
        with self._lock:
            self._subscriptions.add(subscription)
        return subscription


_bus = EventBus()


def publish(event: AgentEvent) -> None:
    """Publish an event on the process-wide bus."""
    _bus.publish(event)


def subscribe() -> Subscription:
    """Subscribe to future events on the process-wide bus."""
    return _bus.subscribe()