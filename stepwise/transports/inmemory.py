"""In-memory change feed for tests and single-process use."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import AsyncIterator, Dict, List, Optional, Tuple

from ..contracts import ChangeEvent
from .base import BaseTransport


class InMemoryTransport(BaseTransport[Tuple[int, ChangeEvent]]):
    """Append-only per-topic log; each subscriber keeps its own cursor.

    With ``replay`` enabled (the default) a new subscriber starts from the
    beginning of the log, mirroring a change stream read from offset zero.
    """

    def __init__(self, replay: bool = True, poll_interval: float = 0.01) -> None:
        self._logs: Dict[str, List[ChangeEvent]] = defaultdict(list)
        self._lock = asyncio.Lock()
        self._replay = replay
        self._poll_interval = poll_interval

    def events(self, topic: str) -> list[ChangeEvent]:
        """Snapshot of everything published on ``topic``."""
        return list(self._logs[topic])

    async def publish(self, topic: str, event: ChangeEvent) -> None:
        """Append an event to the in-memory log."""
        async with self._lock:
            self._logs[topic].append(event)

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Tuple[int, ChangeEvent], ChangeEvent]]:
        """Subscribe to events from topic.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None
        cursor = 0 if self._replay else len(self._logs[topic])

        while True:
            if lifespan and start_time is not None:
                if loop.time() - start_time >= lifespan:
                    break

            async with self._lock:
                log = self._logs[topic]
                event = log[cursor] if cursor < len(log) else None
            if event is not None:
                raw = (cursor, event)
                cursor += 1
                yield raw, event
                continue

            await asyncio.sleep(self._poll_interval)

    async def ack(self, raw_message: Tuple[int, ChangeEvent]) -> None:
        """No-op acknowledgment for in-memory transport."""
        pass
