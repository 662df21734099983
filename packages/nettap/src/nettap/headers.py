"""Header and timestamp helpers for protocol events.

Captured headers keep their original order and may repeat a name. The
protocol's header object is a plain mapping, so duplicates are folded there
and only there.

PUBLIC API:
  - Headers: Ordered list of (name, value) pairs
  - parse_raw_headers: Flat raw header list to dict (later keys win)
  - raw_headers_to_pairs: Flat raw header list to ordered pairs
  - normalize_headers: Any supported header shape to ordered pairs
  - headers_to_object: Ordered pairs to protocol header object
  - header_value: First value for a header name (case-insensitive)
  - format_headers_to_header_text: Status line + headers as a CRLF text block
  - stringify_nested: Recursively stringify leaf values
  - stringify_value: Stringify one value verbatim
  - get_timestamp: Current time as float epoch seconds
"""

import time
from collections.abc import Mapping
from typing import Any

__all__ = [
    "Headers",
    "parse_raw_headers",
    "raw_headers_to_pairs",
    "normalize_headers",
    "headers_to_object",
    "header_value",
    "format_headers_to_header_text",
    "stringify_nested",
    "stringify_value",
    "get_timestamp",
]

Headers = list[tuple[str, Any]]


def stringify_value(value: Any) -> str:
    """Stringify a header value without coercing or dropping it.

    None renders as ``null`` and booleans as ``true``/``false``, matching what
    the DevTools front-end shows for the same values.
    """
    if isinstance(value, str):
        return value
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("latin-1")
    return str(value)


def parse_raw_headers(raw: list) -> dict[str, Any]:
    """Convert a flat ``[name, value, name, value, ...]`` list to a dict.

    Args:
        raw: Flat header list as produced by low-level HTTP stacks.

    Returns:
        Dict where a repeated name keeps its last value and an odd trailing
        name maps to None.

    Examples:
        >>> parse_raw_headers(["Content-Type", "application/json", "Content-Length", "4"])
        {'Content-Type': 'application/json', 'Content-Length': '4'}
    """
    result: dict[str, Any] = {}
    for i in range(0, len(raw), 2):
        result[raw[i]] = raw[i + 1] if i + 1 < len(raw) else None
    return result


def raw_headers_to_pairs(raw: list) -> Headers:
    """Convert a flat raw header list to ordered pairs, keeping duplicates."""
    return [(raw[i], raw[i + 1] if i + 1 < len(raw) else None) for i in range(0, len(raw), 2)]


def normalize_headers(value: Any) -> Headers:
    """Normalize any supported header shape to ordered pairs.

    Accepts a mapping, an iterable of pairs, a flat raw list, or None. Objects
    with a ``multi_items()`` method (httpx.Headers) keep their duplicates.
    """
    if value is None:
        return []
    if hasattr(value, "multi_items"):
        return [(str(k), v) for k, v in value.multi_items()]
    if isinstance(value, Mapping):
        return [(str(k), v) for k, v in value.items()]

    items = list(value)
    if not items:
        return []
    if all(isinstance(item, (list, tuple)) and len(item) == 2 for item in items):
        return [(str(k), v) for k, v in items]
    return raw_headers_to_pairs(items)


def headers_to_object(headers: Headers) -> dict[str, str]:
    """Build the protocol's header object from ordered pairs.

    Repeated names are joined with a newline, which is how DevTools
    represents multi-valued headers such as Set-Cookie.
    """
    result: dict[str, str] = {}
    for name, value in headers:
        text = stringify_value(value)
        if name in result:
            result[name] = f"{result[name]}\n{text}"
        else:
            result[name] = text
    return result


def header_value(headers: Headers, name: str) -> Any:
    """Return the first value for ``name`` (case-insensitive), or None."""
    lowered = name.lower()
    for key, value in headers:
        if key.lower() == lowered:
            return value
    return None


def format_headers_to_header_text(base: str, headers: Mapping | Headers) -> str:
    """Render headers as a raw text block appended to ``base``.

    Args:
        base: Leading text, usually a status line ending in CRLF.
        headers: Mapping or ordered pairs. Duplicates in pairs are kept.

    Returns:
        ``base`` followed by ``name: value`` lines joined with CRLF.

    Examples:
        >>> format_headers_to_header_text("HTTP/1.1 200 OK\\r\\n", {"Content-Type": "application/json"})
        'HTTP/1.1 200 OK\\r\\nContent-Type: application/json'
    """
    pairs = headers.items() if isinstance(headers, Mapping) else headers
    return base + "\r\n".join(f"{name}: {stringify_value(value)}" for name, value in pairs)


def stringify_nested(obj: Mapping) -> dict:
    """Recursively stringify leaf values of nested mappings."""
    return {
        key: stringify_nested(value) if isinstance(value, Mapping) else stringify_value(value)
        for key, value in obj.items()
    }


def get_timestamp() -> float:
    """Current wall time in fractional epoch seconds."""
    return time.time()
