#!/usr/bin/env python3
"""
Utility functions for Batch Pusher
Common helpers for byte conversions and formatting
"""

import re

_SIZE_UNITS = {
    "": 1,
    "B": 1,
    "KB": 1024,
    "MB": 1024**2,
    "GB": 1024**3,
    "TB": 1024**4,
}
_SIZE_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([A-Za-z]*)\s*$")


def format_bytes(bytes_value: int, precision: int = 2) -> str:
    """Format bytes as human-readable string with auto-scaling (KB/MB/GB/TB)."""
    if bytes_value < 1024**2:
        return f"{bytes_value / 1024:.{precision}f} KB"
    elif bytes_value < 1024**3:
        return f"{bytes_value / 1024**2:.{precision}f} MB"
    elif bytes_value < 1024**4:
        return f"{bytes_value / 1024**3:.{precision}f} GB"
    else:
        return f"{bytes_value / 1024**4:.{precision}f} TB"


def parse_bytes(value) -> int:
    """
    Parse a byte count from an int or a string such as "20MB".

    Units are binary (1KB = 1024 bytes) and case-insensitive.

    Raises:
        ValueError: If the value is negative or cannot be parsed

    Examples:
        >>> parse_bytes(1000)
        1000
        >>> parse_bytes("20MB")
        20971520
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid byte count: {value!r}")

    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"Byte count must be >= 0, got {value}")
        return value

    if not isinstance(value, str):
        raise ValueError(f"Invalid byte count: {value!r}")

    match = _SIZE_PATTERN.match(value)
    if not match:
        raise ValueError(f"Invalid byte count: {value!r}")

    number, unit = match.groups()
    unit = unit.upper()
    if unit not in _SIZE_UNITS:
        raise ValueError(f"Unknown size unit '{unit}' in {value!r}")

    return int(float(number) * _SIZE_UNITS[unit])
