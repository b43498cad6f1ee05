"""External message identifiers.

Message ids assigned by the remote service have no upper bound. In memory
they are Python ``int`` values; in storage and on the wire they are canonical
decimal strings (no sign, no leading zeros). Floats are rejected everywhere
because they silently lose precision above 2**53.
"""

from __future__ import annotations

from typing import Any


def parse_external_id(value: Any) -> int:
    """Convert ``value`` to a non-negative arbitrary-precision integer.

    Args:
        value: ``int`` or decimal string

    Returns:
        Parsed identifier

    Raises:
        ValueError: If the value is a float, bool, negative or not integral
    """
    if isinstance(value, bool):
        raise ValueError("External id must not be a boolean")
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if not text.isdigit():
            raise ValueError(f"External id must be a decimal integer, got {value!r}")
        parsed = int(text)
    else:
        raise ValueError(
            f"External id must be int or decimal string, got {type(value).__name__}"
        )
    if parsed < 0:
        raise ValueError(f"External id must be non-negative, got {parsed}")
    return parsed


def format_external_id(value: int) -> str:
    """Render an id in canonical decimal form for storage."""
    return str(parse_external_id(value))


def id_span(earliest: int, latest: int) -> int:
    """Number of ids in the inclusive range ``[earliest, latest]``."""
    if latest < earliest:
        return 0
    return latest - earliest + 1
