from __future__ import annotations

import codecs
from typing import Mapping
from urllib.parse import quote


PARAM_ENCODING = "utf-8"


class EncodingUnavailableError(RuntimeError):
    """The runtime cannot encode parameter values; not a per-request problem."""


def ensure_encoding_available() -> None:
    try:
        codecs.lookup(PARAM_ENCODING)
    except LookupError as e:
        raise EncodingUnavailableError(PARAM_ENCODING) from e


def encode_param_value(value: str) -> str:
    """Form-encode a query value, keeping spaces as %20 and slashes literal.

    Equivalent to form encoding followed by "+" -> "%20" and "%2F" -> "/":
    a literal "+" in the value is still sent as %2B and "~" as %7E.
    Characters the codec cannot represent (lone surrogates) are sent as "?",
    which encodes to %3F.
    """

    try:
        encoded = quote(value, safe="/*", encoding=PARAM_ENCODING, errors="replace")
    except LookupError as e:
        raise EncodingUnavailableError(PARAM_ENCODING) from e
    return encoded.replace("~", "%7E")


def build_repo_uri(path: str, params: Mapping[str, str] | None) -> str:
    if not params:
        return path
    query = "&".join(f"{key}={encode_param_value(value)}" for key, value in params.items())
    return f"{path}?{query}"
