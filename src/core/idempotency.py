from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Protocol


class IdempotencyStore(Protocol):
    """Tracks whether a request event_id has already been replied to.

    Contract: if `seen(event_id)` is True the reply was already written and the
    message must only be acked.
    """

    async def seen(self, event_id: str) -> bool:
        ...

    async def mark(self, event_id: str, *, ttl_seconds: int) -> None:
        ...


@dataclass
class InMemoryIdempotencyStore:
    _seen: dict[str, float]

    def __init__(self) -> None:
        self._seen = {}

    async def seen(self, event_id: str) -> bool:
        now = time.time()
        expired = [k for k, exp in self._seen.items() if exp <= now]
        for k in expired:
            self._seen.pop(k, None)
        return event_id in self._seen

    async def mark(self, event_id: str, *, ttl_seconds: int) -> None:
        self._seen[event_id] = time.time() + ttl_seconds


class RedisIdempotencyStore:
    def __init__(self, redis_client, *, key_prefix: str):
        self._client = redis_client
        self._prefix = key_prefix.rstrip(":")

    def _key(self, event_id: str) -> str:
        return f"{self._prefix}:{event_id}"

    async def seen(self, event_id: str) -> bool:
        return bool(await self._client.exists(self._key(event_id)))

    async def mark(self, event_id: str, *, ttl_seconds: int) -> None:
        # SET NX keeps the first marker when two consumers race on a redelivery.
        await self._client.set(self._key(event_id), "1", ex=ttl_seconds, nx=True)
