from __future__ import annotations

# v1 stream names and envelope schemas (frozen semantics for v1).

REPOSITORY_HTTP_REQUEST_V1 = "repository.http.request.v1"
REPOSITORY_HTTP_RESPONSE_V1 = "repository.http.response.v1"


def dlq_stream(base_stream: str) -> str:
    return f"dlq.{base_stream}.v1"

