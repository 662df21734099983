"""Identifier generation.

PUBLIC API:
  - generate_id: Collision-resistant random request id
  - generate_hash: Deterministic short hash of a string
"""

import uuid

__all__ = ["generate_id", "generate_hash"]

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def generate_id() -> str:
    """Return a random version-4 UUID string."""
    return str(uuid.uuid4())


def generate_hash(text: str) -> str:
    """Hash ``text`` to a short base36 string.

    Classic 31-multiplier rolling hash over UTF-16 code units, truncated to a
    signed 32-bit integer. Same input always gives the same output; the empty
    string hashes to ``"0"`` and results may carry a leading ``-``.
    """
    h = 0
    encoded = text.encode("utf-16-le")
    for i in range(0, len(encoded), 2):
        unit = encoded[i] | (encoded[i + 1] << 8)
        h = (h * 31 + unit) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return _to_base36(h)


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    sign = "-" if value < 0 else ""
    value = abs(value)
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return sign + "".join(reversed(digits))
