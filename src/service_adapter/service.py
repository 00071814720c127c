from __future__ import annotations

import asyncio
import logging
import os
import socket

from src.core.context import build_context
from src.core.ids import consumer_name
from src.core.message_bus import RedisStreamBus
from src.core.settings import Settings, load_settings
from src.repository.connector import HttpRepositoryConnector

from .bridge import HttpServiceAdapter


async def serve(settings: Settings, *, consumer: str | None = None) -> None:
    ctx = build_context(settings)
    bus = RedisStreamBus(
        settings.redis_url,
        block_ms=settings.block_ms,
        read_count=settings.read_count,
        dedupe_ttl_seconds=settings.dedupe_ttl_seconds,
    )
    consumer = consumer or consumer_name(os.getenv("HOSTNAME") or socket.gethostname(), default="service-adapter")

    try:
        async with HttpRepositoryConnector(ctx) as connector:
            adapter = HttpServiceAdapter(ctx, connector=connector, bus=bus)
            await adapter.run(consumer=consumer)
    finally:
        await bus.aclose()


def main() -> None:
    s = load_settings()
    logging.basicConfig(level=s.log_level)
    try:
        asyncio.run(serve(s))
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("Shutting down service adapter...")


if __name__ == "__main__":
    main()
