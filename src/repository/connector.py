"""HTTP repository connector.

`process` runs the per-request chain

    filter headers -> build URI -> GET upstream -> aggregate body -> map

and always resolves to a ClientResponse: upstream statuses pass through
unchanged (4xx/5xx included), transport faults become the 500 sentinel.
The only fault that escapes is EncodingUnavailableError, which means the
runtime itself is broken.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Mapping, Optional

import httpx

from src.core.context import BridgeContext
from src.core.models import ClientRequest, ClientResponse, freeze_headers

from .headers import AllowedHeaders, filter_headers, to_header_items
from .uri import PARAM_ENCODING, EncodingUnavailableError, build_repo_uri, ensure_encoding_available


ERROR_MESSAGE = "Unable to get content from the repository"

CLIENT_OPTION_KEYS = {
    "timeout",
    "connect_timeout",
    "read_timeout",
    "max_connections",
    "max_keepalive_connections",
    "keepalive_expiry",
    "verify",
    "trust_env",
}

# httpx defaults, restated so a partial override keeps the rest intact.
_DEFAULT_TIMEOUT = 5.0
_DEFAULT_LIMITS = {"max_connections": 100, "max_keepalive_connections": 20, "keepalive_expiry": 5.0}


def build_client_kwargs(options: Mapping[str, Any]) -> Dict[str, Any]:
    """Translate `client_options` into httpx.AsyncClient keyword arguments.

    Empty options leave every transport default in place. Unknown keys are a
    configuration error.
    """

    unknown = set(options) - CLIENT_OPTION_KEYS
    if unknown:
        raise ValueError(f"unknown client_options: {sorted(unknown)}")

    kwargs: Dict[str, Any] = {}
    if {"timeout", "connect_timeout", "read_timeout"} & set(options):
        base = options.get("timeout", _DEFAULT_TIMEOUT)
        kwargs["timeout"] = httpx.Timeout(
            base,
            connect=options.get("connect_timeout", base),
            read=options.get("read_timeout", base),
        )
    if set(_DEFAULT_LIMITS) & set(options):
        limits = {k: options.get(k, v) for k, v in _DEFAULT_LIMITS.items()}
        kwargs["limits"] = httpx.Limits(**limits)
    for flag in ("verify", "trust_env"):
        if flag in options:
            kwargs[flag] = bool(options[flag])
    return kwargs


@dataclass(frozen=True)
class FetchOutcome:
    """Result of the upstream stage: exactly one of `response` / `error` is set."""

    response: Optional[ClientResponse] = None
    error: Optional[BaseException] = None


async def aggregate_body(chunks: AsyncIterator[bytes]) -> bytes:
    parts: list[bytes] = []
    async for chunk in chunks:
        parts.append(chunk)
    return b"".join(parts)


def to_client_response(response: httpx.Response, body: bytes) -> ClientResponse:
    grouped: Dict[str, list[str]] = {}
    encoding = response.headers.encoding
    # Raw items keep the upstream name case and every repeated value.
    for raw_name, raw_value in response.headers.raw:
        grouped.setdefault(raw_name.decode(encoding), []).append(raw_value.decode(encoding))
    return ClientResponse(status_code=response.status_code, headers=freeze_headers(grouped), body=body)


class HttpRepositoryConnector:
    def __init__(self, ctx: BridgeContext, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._log = ctx.child_logger("repository")
        try:
            ensure_encoding_available()
        except EncodingUnavailableError:
            self._log.critical("Unsupported encoding %s", PARAM_ENCODING)
            raise

        settings = ctx.settings
        self._destination = settings.client_destination
        self._allowed = AllowedHeaders.compile(settings.allowed_request_headers)

        kwargs = build_client_kwargs(settings.client_options)
        if transport is not None:
            kwargs["transport"] = transport
        self._client = httpx.AsyncClient(base_url=self._destination.base_url, **kwargs)

    async def process(self, request: ClientRequest) -> ClientResponse:
        headers = filter_headers(request.headers, self._allowed)
        try:
            uri = build_repo_uri(request.path, request.params)
        except EncodingUnavailableError:
            self._log.critical("Unexpected failure - unable to encode parameters as %s", PARAM_ENCODING)
            raise

        if self._log.isEnabledFor(logging.DEBUG):
            self._log.debug("GET Http Repository: %s%s with headers %s", self._destination.base_url, uri, headers)

        outcome = await self._fetch(uri, headers)
        if outcome.response is not None:
            return outcome.response
        self._log.error(ERROR_MESSAGE, exc_info=outcome.error)
        return ClientResponse.error()

    async def _fetch(self, uri: str, headers: Mapping[str, tuple[str, ...]]) -> FetchOutcome:
        try:
            async with self._client.stream("GET", uri, headers=to_header_items(headers)) as response:
                self._log.debug("Got response from remote repository status [%s]", response.status_code)
                if response.is_stream_consumed:
                    # Already buffered by the transport; the raw stream is gone.
                    body = response.content
                else:
                    body = await aggregate_body(response.aiter_raw())
                return FetchOutcome(response=to_client_response(response, body))
        except Exception as e:
            # Connection refused, resets, premature end of body: all recovered here.
            return FetchOutcome(error=e)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "HttpRepositoryConnector":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
