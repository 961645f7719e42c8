"""Byte size parsing and alignment arithmetic.

Size strings are a number with an optional binary unit suffix. Every suffix
is a power of 1024 regardless of spelling, so ``"1M"``, ``"1MB"`` and
``"1MiB"`` all mean 1048576 bytes. A bare number is a byte count.

Example:
    >>> parse_size("128MiB")
    134217728
    >>> parse_size("1.5G")
    1610612736
    >>> parse_size("abc") is None
    True
"""

from __future__ import annotations

import re
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from overlay_separator.storage.exceptions import SizeParseError


SECTOR_SIZE = 512
KIB = 1024
MIB = 1024**2
GIB = 1024**3
TIB = 1024**4

UNIT_MULTIPLIERS = {
    "": 1,
    "k": KIB,
    "kb": KIB,
    "kib": KIB,
    "m": MIB,
    "mb": MIB,
    "mib": MIB,
    "g": GIB,
    "gb": GIB,
    "gib": GIB,
    "t": TIB,
    "tb": TIB,
    "tib": TIB,
}

_SIZE_PATTERN = re.compile(r"^([0-9]+(?:\.[0-9]+)?)([a-z]*)$")


def parse_size(text: Optional[str]) -> Optional[int]:
    """Convert a human readable size to bytes.

    Returns None for empty or unparseable input. Fractional values are
    rounded half-up to the nearest whole byte.
    """
    if text is None:
        return None
    value = re.sub(r"\s+", "", str(text)).lower()
    if not value:
        return None
    match = _SIZE_PATTERN.match(value)
    if not match:
        return None
    multiplier = UNIT_MULTIPLIERS.get(match.group(2))
    if multiplier is None:
        return None
    amount = Decimal(match.group(1)) * multiplier
    return int(amount.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def require_size(text: Optional[str], field: str) -> int:
    """Parse a size or raise SizeParseError naming the field."""
    size = parse_size(text)
    if size is None:
        raise SizeParseError(field, text)
    return size


def align_up(value: int, alignment: int) -> int:
    """Round value up to the next multiple of alignment."""
    return -(-value // alignment) * alignment


def human_size(size_bytes) -> str:
    if size_bytes is None:
        return "0B"
    size = float(size_bytes)
    for unit in ["B", "KiB", "MiB", "GiB", "TiB"]:
        if size < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}PiB"
