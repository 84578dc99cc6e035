"""Human-readable byte sizes for dashboard payloads."""
from __future__ import annotations

_UNITS = ("B", "KB", "MB", "GB", "TB")


def bytes_to_size(num_bytes: int) -> str:
    """Render ``num_bytes`` with a binary unit, e.g. ``1536 -> "1.50 KB"``."""

    if num_bytes <= 0:
        return "0 B"

    value = float(num_bytes)
    unit = 0
    while value >= 1024 and unit < len(_UNITS) - 1:
        value /= 1024
        unit += 1

    if unit == 0:
        return f"{num_bytes} B"
    return f"{value:.2f} {_UNITS[unit]}"
