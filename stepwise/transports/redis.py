"""Redis Streams change feed for cross-process fan-out."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from ..contracts import ChangeEvent
from .base import BaseTransport

logger = logging.getLogger(__name__)


class RedisTransport(BaseTransport[str]):
    """Publish change events with XADD and read them with XREAD.

    Streams give every subscriber the full, ordered sequence of events without
    consuming them for others, which is what the change feed needs.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        stream_prefix: str = "stepwise",
        start_id: str = "$",
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.stream_prefix = stream_prefix
        self.start_id = start_id
        self._redis: Optional[Any] = None

    def _stream(self, topic: str) -> str:
        return f"{self.stream_prefix}:{topic}"

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        # Test connection
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, event: ChangeEvent) -> None:
        """Append event to the topic's stream."""
        if not self._redis:
            await self.connect()
        await self._redis.xadd(self._stream(topic), {"event": event.to_json()})

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[str, ChangeEvent]]:
        """Read events from the topic's stream, starting at ``start_id``."""
        if not self._redis:
            await self.connect()

        stream = self._stream(topic)
        last_id = self.start_id
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time is not None:
                if loop.time() - start_time >= lifespan:
                    break

            result = await self._redis.xread({stream: last_id}, count=100, block=1000)
            for _, entries in result or []:
                for entry_id, fields in entries:
                    last_id = entry_id
                    try:
                        event = ChangeEvent.from_json(fields["event"])
                    except (KeyError, ValidationError) as e:
                        logger.warning(f"Dropping malformed change event {entry_id}: {e}")
                        continue
                    yield entry_id, event

    async def ack(self, raw_message: str) -> None:
        """No-op acknowledgment; stream entries are not consumed."""
        pass
