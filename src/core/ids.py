from __future__ import annotations

import uuid


def new_event_id() -> str:
    return str(uuid.uuid4())


def consumer_name(hostname: str | None, *, default: str) -> str:
    """Consumer name inside the group; one per process."""

    return hostname or f"{default}-{uuid.uuid4().hex[:8]}"
