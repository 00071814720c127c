from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Optional, Protocol

from src.contracts.streams import REPOSITORY_HTTP_RESPONSE_V1
from src.core.context import BridgeContext
from src.core.ids import new_event_id
from src.core.message_bus import MessageBus, ReceivedMessage
from src.core.models import ClientRequest, ClientResponse, EventEnvelope


class RepositoryConnector(Protocol):
    async def process(self, request: ClientRequest) -> ClientResponse:
        ...


def build_reply_event(
    *,
    request_event: EventEnvelope,
    response: ClientResponse,
    produced_at: Optional[datetime] = None,
    source_service: str = "service-adapter-http",
) -> EventEnvelope:
    """Reply envelope answering `request_event` (same trace, correlated by event_id)."""

    return EventEnvelope(
        event_id=new_event_id(),
        trace_id=request_event.trace_id,
        produced_at=produced_at or datetime.now(timezone.utc),
        schema=REPOSITORY_HTTP_RESPONSE_V1,
        schema_version=1,
        payload=response.to_payload(),
        source_service=source_service,
        correlation_id=request_event.event_id,
    )


class HttpServiceAdapter:
    """Answers each inbound repository request through the connector."""

    def __init__(
        self,
        ctx: BridgeContext,
        *,
        connector: RepositoryConnector,
        bus: MessageBus,
        source_service: str = "service-adapter-http",
    ) -> None:
        self._ctx = ctx
        self._connector = connector
        self._bus = bus
        self._source_service = source_service
        self._log = ctx.child_logger("service_adapter")

    async def handle(self, msg: ReceivedMessage) -> EventEnvelope:
        if msg.envelope is None or not msg.reply_to:
            raise ValueError(f"message {msg.message_id} has no reply stream")

        self._trace_message(msg)
        response = await self._respond(msg)
        reply = build_reply_event(request_event=msg.envelope, response=response, source_service=self._source_service)
        await self._bus.reply(msg.reply_to, reply)
        return reply

    async def _respond(self, msg: ReceivedMessage) -> ClientResponse:
        # Last-resort net: the caller must get an answer even if decoding or the
        # connector itself blows up.
        try:
            request = ClientRequest.from_payload(msg.envelope.payload)
            return await self._connector.process(request)
        except Exception:
            self._log.exception(
                "Error happened",
                extra={"event_id": msg.envelope.event_id, "trace_id": msg.envelope.trace_id},
            )
            return ClientResponse.error()

    def _trace_message(self, msg: ReceivedMessage) -> None:
        if not self._log.isEnabledFor(logging.DEBUG):
            return
        try:
            self._log.debug(
                "Got message from <%s> with value <%s>",
                msg.reply_to,
                json.dumps(msg.envelope.payload, indent=2, ensure_ascii=False),
            )
        except Exception:
            self._log.debug("trace_failed", extra={"message_id": msg.message_id}, exc_info=True)

    async def run(self, *, consumer: str, stop_after_messages: int | None = None) -> None:
        s = self._ctx.settings
        self._log.info("Registered <%s> on %s", type(self).__name__, s.address)
        await self._bus.run_worker(
            stream=s.address,
            group=s.redis_consumer_group,
            consumer=consumer,
            handler=self.handle,
            max_in_flight=s.max_in_flight,
            stop_after_messages=stop_after_messages,
        )
