from __future__ import annotations

import base64
import binascii
from datetime import datetime
from typing import Any

from . import streams


ENVELOPE_REQUIRED_KEYS = {
    "event_id",
    "trace_id",
    "produced_at",
    "schema",
    "schema_version",
    "payload",
}
ENVELOPE_OPTIONAL_KEYS = {"source_service", "reply_to", "correlation_id"}


def _require_exact_keys(obj: dict[str, Any], *, required: set[str], optional: set[str] | None = None) -> None:
    optional = optional or set()
    keys = set(obj.keys())
    missing = required - keys
    extra = keys - required - optional
    if missing:
        raise ValueError(f"missing keys: {sorted(missing)}")
    if extra:
        raise ValueError(f"extra keys not allowed in v1: {sorted(extra)}")


def _require_str(d: dict[str, Any], k: str) -> str:
    v = d.get(k)
    if not isinstance(v, str) or not v.strip():
        raise ValueError(f"{k} must be non-empty string")
    return v


def _require_int(d: dict[str, Any], k: str) -> int:
    v = d.get(k)
    # bool is an int subclass; reject it explicitly.
    if not isinstance(v, int) or isinstance(v, bool):
        raise ValueError(f"{k} must be int")
    return v


def _optional_str(d: dict[str, Any], k: str) -> str | None:
    if d.get(k) is None:
        return None
    return _require_str(d, k)


def _parse_iso8601(s: str) -> datetime:
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except Exception as e:  # pragma: no cover
        raise ValueError(f"invalid ISO8601 timestamp: {s}") from e
    if dt.tzinfo is None:
        raise ValueError("timestamp must include timezone")
    return dt


def _require_string_map(d: dict[str, Any], k: str) -> dict[str, str]:
    v = d.get(k)
    if not isinstance(v, dict):
        raise ValueError(f"{k} must be object")
    for name, value in v.items():
        if not isinstance(value, str):
            raise ValueError(f"{k}.{name} must be string")
    return v


def _require_header_map(d: dict[str, Any], k: str) -> dict[str, list[str]]:
    v = d.get(k)
    if not isinstance(v, dict):
        raise ValueError(f"{k} must be object")
    for name, values in v.items():
        if not name:
            raise ValueError(f"{k} names must be non-empty")
        if not isinstance(values, list) or not all(isinstance(x, str) for x in values):
            raise ValueError(f"{k}.{name} must be array of strings")
    return v


def validate_envelope_dict(event: dict[str, Any]) -> None:
    """Strict v1 validation.

    - v1 does not allow extra fields (schema evolution uses v2 streams)
    - requests must name a reply stream, replies must name the request they answer
    - payload must match schema-specific rules
    """

    _require_exact_keys(event, required=ENVELOPE_REQUIRED_KEYS, optional=ENVELOPE_OPTIONAL_KEYS)
    _require_str(event, "event_id")
    _require_str(event, "trace_id")
    produced_at = _require_str(event, "produced_at")
    _parse_iso8601(produced_at)
    _optional_str(event, "source_service")

    schema = _require_str(event, "schema")
    schema_version = _require_int(event, "schema_version")
    if schema_version != 1 or not schema.endswith(".v1"):
        raise ValueError("schema_version must be 1 and schema must end with .v1")

    if schema == streams.REPOSITORY_HTTP_REQUEST_V1:
        _require_str(event, "reply_to")
    elif schema == streams.REPOSITORY_HTTP_RESPONSE_V1:
        _require_str(event, "correlation_id")

    payload = event.get("payload")
    if not isinstance(payload, dict):
        raise ValueError("payload must be object")
    validate_payload(schema, payload)


def validate_payload(schema: str, payload: dict[str, Any]) -> None:
    if schema == streams.REPOSITORY_HTTP_REQUEST_V1:
        _require_exact_keys(payload, required={"path", "params", "headers"})
        path = _require_str(payload, "path")
        if not path.startswith("/"):
            raise ValueError("path must start with '/'")
        _require_string_map(payload, "params")
        _require_header_map(payload, "headers")
        return

    if schema == streams.REPOSITORY_HTTP_RESPONSE_V1:
        _require_exact_keys(payload, required={"statusCode", "headers", "body"})
        status = _require_int(payload, "statusCode")
        if not (100 <= status <= 999):
            raise ValueError("statusCode must be a three-digit code")
        _require_header_map(payload, "headers")
        body = payload.get("body")
        if not isinstance(body, str):
            raise ValueError("body must be base64 string")
        try:
            base64.b64decode(body, validate=True)
        except binascii.Error as e:
            raise ValueError("body must be base64 string") from e
        return

    # For new schemas: add v2 stream, then update this mapping.
    raise ValueError(f"unknown schema: {schema}")

