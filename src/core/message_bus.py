from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from .models import EventEnvelope
from .idempotency import IdempotencyStore, RedisIdempotencyStore

from src.contracts.streams import dlq_stream
from src.contracts.validation import validate_envelope_dict


logger = logging.getLogger(__name__)


class MessageBus:
    """Abstraction for the request/reply channel."""

    async def publish(self, stream: str, event: EventEnvelope) -> None:  # pragma: no cover
        raise NotImplementedError

    async def reply(self, reply_to: str, event: EventEnvelope) -> None:  # pragma: no cover
        raise NotImplementedError

    async def run_worker(self, *, stream: str, group: str, consumer: str, handler: "Handler", **kwargs) -> None:  # pragma: no cover
        raise NotImplementedError


@dataclass(frozen=True)
class ReceivedMessage:
    stream: str
    message_id: str
    envelope: Optional[EventEnvelope]
    fields: dict[str, str]
    error: Optional[str] = None

    @property
    def reply_to(self) -> Optional[str]:
        return self.envelope.reply_to if self.envelope is not None else None


Handler = Callable[[ReceivedMessage], Awaitable[object]]


def envelope_to_wire_dict(event: EventEnvelope) -> dict:
    d = asdict(event)
    produced_at = event.produced_at
    if isinstance(produced_at, datetime):
        if produced_at.tzinfo is None:
            produced_at = produced_at.replace(tzinfo=timezone.utc)
        d["produced_at"] = produced_at.isoformat()
    # Optional routing fields are omitted rather than sent as null.
    for k in ("source_service", "reply_to", "correlation_id"):
        if d.get(k) is None:
            d.pop(k, None)
    validate_envelope_dict(d)
    return d


def wire_dict_to_envelope(d: dict) -> EventEnvelope:
    # validate first (strict)
    validate_envelope_dict(d)
    produced_at = datetime.fromisoformat(str(d["produced_at"]).replace("Z", "+00:00"))
    return EventEnvelope(
        event_id=d["event_id"],
        trace_id=d["trace_id"],
        produced_at=produced_at,
        schema=d["schema"],
        schema_version=int(d["schema_version"]),
        payload=d["payload"],
        source_service=d.get("source_service"),
        reply_to=d.get("reply_to"),
        correlation_id=d.get("correlation_id"),
    )


class RedisStreamBus(MessageBus):
    """Redis Streams implementation on `redis.asyncio`.

    Requests arrive on a stream read through a consumer group; replies are
    appended to the stream named by the request's `reply_to`.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        block_ms: int = 5000,
        read_count: int = 10,
        dedupe_ttl_seconds: int = 24 * 3600,
        client=None,
        idempotency: IdempotencyStore | None = None,
    ):
        self.redis_url = redis_url
        self._client = client
        self._idempotency = idempotency
        self._groups: set[tuple[str, str]] = set()
        self.block_ms = block_ms
        self.read_count = read_count
        self.dedupe_ttl_seconds = dedupe_ttl_seconds

    def _get_client(self):
        if self._client is None:
            import redis.asyncio as redis  # type: ignore

            self._client = redis.Redis.from_url(self.redis_url, decode_responses=True)
        return self._client

    async def _ensure_group(self, stream: str, group: str) -> None:
        if (stream, group) in self._groups:
            return
        client = self._get_client()
        try:
            await client.xgroup_create(name=stream, groupname=group, id="$", mkstream=True)
        except Exception as e:
            # BUSYGROUP means it already exists.
            if "BUSYGROUP" not in str(e):
                raise
        self._groups.add((stream, group))

    async def publish(self, stream: str, event: EventEnvelope) -> None:
        client = self._get_client()
        body = json.dumps(envelope_to_wire_dict(event), ensure_ascii=False)
        await client.xadd(stream, {"event": body})

    async def reply(self, reply_to: str, event: EventEnvelope) -> None:
        await self.publish(reply_to, event)

    async def poll(self, *, stream: str, group: str, consumer: str, cursor: str = ">") -> list[ReceivedMessage]:
        """Read a batch for `consumer`.

        `cursor=">"` reads new messages. Any other id re-reads this consumer's
        own pending entries after that id.
        """

        await self._ensure_group(stream, group)
        client = self._get_client()
        resp = await client.xreadgroup(
            groupname=group,
            consumername=consumer,
            streams={stream: cursor},
            count=self.read_count,
            block=self.block_ms,
        )
        out: list[ReceivedMessage] = []
        for (sname, items) in resp or []:
            for (msg_id, fields) in items:
                # Pending entries trimmed from the stream come back with no fields.
                raw = dict(fields or {})
                body = raw.get("event")
                if not body:
                    # malformed message
                    out.append(ReceivedMessage(stream=sname, message_id=msg_id, envelope=None, fields=raw, error="missing event field"))
                    continue
                try:
                    env = wire_dict_to_envelope(json.loads(body))
                except ValueError as e:
                    # json.JSONDecodeError is a ValueError too.
                    out.append(ReceivedMessage(stream=sname, message_id=msg_id, envelope=None, fields=raw, error=str(e)))
                    continue
                out.append(ReceivedMessage(stream=sname, message_id=msg_id, envelope=env, fields=raw))
        return out

    async def ack(self, *, stream: str, group: str, message_id: str) -> None:
        client = self._get_client()
        await client.xack(stream, group, message_id)

    async def _dlq(self, *, base_stream: str, event_json: str, error: str, original_message_id: str) -> None:
        client = self._get_client()
        await client.xadd(
            dlq_stream(base_stream),
            {
                "event": event_json,
                "error": error,
                "failed_at": datetime.now(timezone.utc).isoformat(),
                "original_stream": base_stream,
                "original_message_id": original_message_id,
            },
        )

    def _idempotency_store(self, *, group: str, stream: str) -> IdempotencyStore:
        if self._idempotency is None:
            self._idempotency = RedisIdempotencyStore(self._get_client(), key_prefix=f"replied:{group}:{stream}")
        return self._idempotency

    async def dispatch(self, msg: ReceivedMessage, *, group: str, handler: Handler) -> None:
        """Deliver one message to `handler`, then ack it.

        - Envelopes without a usable reply stream go to the DLQ (nobody to answer)
        - A duplicate event_id was already answered: ack only
        - Handler failure: DLQ, no retry
        """

        stream = msg.stream
        body = msg.fields.get("event") or "{}"
        idem = self._idempotency_store(group=group, stream=stream)

        if msg.envelope is None or not msg.reply_to:
            reason = msg.error or "reply_to missing"
            logger.warning("dead_letter_unrepliable", extra={"stream": stream, "message_id": msg.message_id, "error": reason})
            await self._dlq(base_stream=stream, event_json=body, error=f"contract_invalid: {reason}", original_message_id=msg.message_id)
            await self.ack(stream=stream, group=group, message_id=msg.message_id)
            return

        env = msg.envelope
        try:
            seen = await idem.seen(env.event_id)
        except Exception:
            # An unreachable store counts as not seen.
            logger.warning("idempotency_check_failed", extra={"stream": stream, "event_id": env.event_id}, exc_info=True)
            seen = False
        if seen:
            await self.ack(stream=stream, group=group, message_id=msg.message_id)
            return

        try:
            await handler(msg)
        except Exception as e:
            logger.exception("handler_failed", extra={"stream": stream, "event_id": env.event_id})
            await self._dlq(base_stream=stream, event_json=body, error=f"handler_failed: {e}", original_message_id=msg.message_id)
            await self.ack(stream=stream, group=group, message_id=msg.message_id)
            return

        try:
            await idem.mark(env.event_id, ttl_seconds=self.dedupe_ttl_seconds)
        except Exception:
            # The reply is already written; acking still ends the delivery.
            logger.warning("idempotency_mark_failed", extra={"stream": stream, "event_id": env.event_id}, exc_info=True)
        await self.ack(stream=stream, group=group, message_id=msg.message_id)

    async def run_worker(
        self,
        *,
        stream: str,
        group: str,
        consumer: str,
        handler: Handler,
        max_in_flight: int = 64,
        stop_after_messages: int | None = None,
    ) -> None:
        """Run an at-least-once worker with one task per message.

        At most `max_in_flight` messages are handled at once; replies may
        complete out of arrival order. The worker first re-reads the entries
        still pending for `consumer`, then switches to new messages.
        """

        slots = asyncio.Semaphore(max_in_flight)
        in_flight: set[asyncio.Task] = set()
        processed = 0
        cursor = "0"

        async def _run(msg: ReceivedMessage) -> None:
            nonlocal processed
            try:
                await self.dispatch(msg, group=group, handler=handler)
            except Exception:
                # Not acked: the entry stays pending and is re-read when a worker
                # with this consumer name starts.
                logger.exception("dispatch_failed", extra={"stream": stream, "message_id": msg.message_id})
            finally:
                processed += 1
                slots.release()

        try:
            while stop_after_messages is None or processed < stop_after_messages:
                batch = await self.poll(stream=stream, group=group, consumer=consumer, cursor=cursor)
                if cursor != ">":
                    if not batch:
                        cursor = ">"
                        continue
                    cursor = batch[-1].message_id
                for msg in batch:
                    await slots.acquire()
                    task = asyncio.create_task(_run(msg))
                    in_flight.add(task)
                    task.add_done_callback(in_flight.discard)
        finally:
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
