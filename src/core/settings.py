from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Tuple

import os

from src.contracts.streams import REPOSITORY_HTTP_REQUEST_V1


@dataclass(frozen=True)
class ClientDestination:
    domain: str
    port: int

    @property
    def base_url(self) -> str:
        return f"http://{self.domain}:{self.port}"


@dataclass(frozen=True)
class Settings:
    env: str
    redis_url: str
    redis_consumer_group: str
    address: str
    client_destination: ClientDestination
    client_options: Dict[str, Any] = field(default_factory=dict)
    allowed_request_headers: Tuple[str, ...] = ()
    log_level: str = "INFO"
    max_in_flight: int = 64
    block_ms: int = 5000
    read_count: int = 10
    dedupe_ttl_seconds: int = 24 * 3600
    api_host: str = "0.0.0.0"
    api_port: int = 8000


def _parse_destination(section: Dict[str, Any] | None) -> ClientDestination:
    if not section or not section.get("domain"):
        raise RuntimeError("client_destination.domain is required")
    try:
        port = int(section["port"])
    except (KeyError, TypeError, ValueError) as e:
        raise RuntimeError("client_destination.port must be an integer") from e
    if not (0 < port < 65536):
        raise RuntimeError(f"client_destination.port out of range: {port}")
    return ClientDestination(domain=str(section["domain"]), port=port)


def settings_from_dict(data: Dict[str, Any]) -> Settings:
    # Env overrides (used to point one image at different channels/brokers).
    env_redis_url = os.getenv("REPOBRIDGE_REDIS_URL")
    env_address = os.getenv("REPOBRIDGE_ADDRESS")
    env_log_level = os.getenv("REPOBRIDGE_LOG_LEVEL")

    redis_section = data.get("redis", {})
    stream_section = redis_section.get("stream", {})
    adapter_section = data.get("service_adapter", {})
    api_section = data.get("api", {})

    options = data.get("client_options") or {}
    if not isinstance(options, dict):
        raise RuntimeError("client_options must be a mapping")
    patterns = data.get("allowed_request_headers") or []
    if not isinstance(patterns, list):
        raise RuntimeError("allowed_request_headers must be a list")

    return Settings(
        env=data.get("env", "dev"),
        redis_url=env_redis_url or redis_section["url"],
        redis_consumer_group=stream_section.get("consumer_group", "repository-connector"),
        address=env_address or adapter_section.get("address", REPOSITORY_HTTP_REQUEST_V1),
        client_destination=_parse_destination(data.get("client_destination")),
        client_options=dict(options),
        allowed_request_headers=tuple(str(p) for p in patterns),
        log_level=(env_log_level or data.get("logging", {}).get("level", "INFO")).upper(),
        max_in_flight=int(adapter_section.get("max_in_flight", 64)),
        block_ms=int(stream_section.get("block_ms", 5000)),
        read_count=int(stream_section.get("read_count", 10)),
        dedupe_ttl_seconds=int(adapter_section.get("dedupe_ttl_seconds", 24 * 3600)),
        api_host=str(api_section.get("host", "0.0.0.0")),
        api_port=int(api_section.get("port", 8000)),
    )


def load_settings(path: str | Path | None = None) -> Settings:
    p = Path(path or os.getenv("REPOBRIDGE_SETTINGS", "config/settings.yaml"))

    # Keep imports optional at module import time (tests/tools may not need YAML).
    try:
        import yaml  # type: ignore
    except ModuleNotFoundError as e:  # pragma: no cover
        raise ModuleNotFoundError(
            "PyYAML is required to load config/settings.yaml. Install with: pip install pyyaml"
        ) from e

    data: Dict[str, Any] = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    return settings_from_dict(data)
