from __future__ import annotations

import base64
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple


Headers = Mapping[str, Tuple[str, ...]]


@dataclass(frozen=True)
class EventEnvelope:
    event_id: str
    trace_id: str
    produced_at: datetime
    schema: str
    schema_version: int
    payload: Dict[str, Any]
    source_service: Optional[str] = None
    reply_to: Optional[str] = None
    correlation_id: Optional[str] = None


def _dedupe(values: Iterable[str]) -> Tuple[str, ...]:
    # Header values behave as a set; keep first-seen order for readability.
    return tuple(dict.fromkeys(str(v) for v in values))


def freeze_headers(headers: Mapping[str, Iterable[str]] | None) -> Dict[str, Tuple[str, ...]]:
    return {str(name): _dedupe(values) for name, values in (headers or {}).items()}


def headers_to_wire(headers: Headers) -> Dict[str, list[str]]:
    return {name: list(values) for name, values in headers.items()}


@dataclass(frozen=True)
class ClientRequest:
    """Request as decoded from the inbound channel. Read-only to the bridge."""

    path: str
    params: Mapping[str, str] = field(default_factory=dict)
    headers: Headers = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ClientRequest":
        return cls(
            path=str(payload["path"]),
            params={str(k): str(v) for k, v in (payload.get("params") or {}).items()},
            headers=freeze_headers(payload.get("headers")),
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "params": dict(self.params),
            "headers": headers_to_wire(self.headers),
        }


@dataclass(frozen=True)
class ClientResponse:
    status_code: int
    headers: Headers = field(default_factory=dict)
    body: bytes = b""

    @classmethod
    def error(cls) -> "ClientResponse":
        """The fixed sentinel for every internally recovered failure."""

        return cls(status_code=500, headers={}, body=b"")

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ClientResponse":
        return cls(
            status_code=int(payload["statusCode"]),
            headers=freeze_headers(payload.get("headers")),
            body=base64.b64decode(payload.get("body") or ""),
        )

    def to_payload(self) -> Dict[str, Any]:
        # Byte buffers travel as base64 text inside the JSON envelope.
        return {
            "statusCode": self.status_code,
            "headers": headers_to_wire(self.headers),
            "body": base64.b64encode(self.body).decode("ascii"),
        }
