from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Pattern, Tuple

from src.core.models import Headers


@dataclass(frozen=True)
class AllowedHeaders:
    """Ordered allow-list of request header name patterns.

    A name is allowed when at least one pattern matches the whole name
    (case-sensitive). An empty allow-list drops every header.
    """

    patterns: Tuple[Pattern[str], ...] = ()

    @classmethod
    def compile(cls, expressions: Iterable[str]) -> "AllowedHeaders":
        return cls(patterns=tuple(re.compile(expr) for expr in expressions))

    def allows(self, name: str) -> bool:
        return any(p.fullmatch(name) for p in self.patterns)


def filter_headers(headers: Headers, allowed: AllowedHeaders) -> dict[str, tuple[str, ...]]:
    return {name: tuple(values) for name, values in headers.items() if allowed.allows(name)}


def to_header_items(headers: Headers) -> list[tuple[str, str]]:
    """Flatten multi-valued headers into (name, value) pairs for the transport."""

    return [(name, value) for name, values in headers.items() for value in values]
