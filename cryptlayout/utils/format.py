"""
Formatting utilities.

This module provides functions for formatting sizes, parsing size specifications,
and consistent terminal output formatting.
"""
import re
from typing import Union

MIB = 1024 * 1024


# ANSI Terminal Colors
class TermColors:
    """ANSI color codes for terminal output"""
    INFO = '\033[94m'     # Blue for informational messages
    SUCCESS = '\033[92m'  # Green for success messages
    WARNING = '\033[93m'  # Yellow for warnings
    ERROR = '\033[91m'    # Red for errors
    SIM = '\033[96m'      # Cyan for simulation messages
    HEADER = '\033[95m'   # Purple for headers
    BOLD = '\033[1m'      # Bold text
    ENDC = '\033[0m'      # End color


def colorize(message: str, color: str, enabled: bool = True) -> str:
    """
    Add color to a message if color output is enabled.

    Args:
        message: The message to colorize
        color: The color to use (from TermColors)
        enabled: Whether colorization is enabled

    Returns:
        Colorized message or original message if colors disabled
    """
    if not enabled:
        return message
    return f"{color}{message}{TermColors.ENDC}"


def mib_to_human_readable(size_mib: int) -> str:
    """Render a MiB count with the largest binary unit that keeps it >= 1."""
    value: float = size_mib
    for unit in ['MiB', 'GiB', 'TiB']:
        if value < 1024:
            return f"{value:.2f} {unit}" if unit != 'MiB' else f"{int(value)} MiB"
        value /= 1024
    return f"{value:.2f} PiB"


_UNIT_BYTES = {
    "": 1, "B": 1,
    "K": 1024, "KIB": 1024, "KB": 1000,
    "M": 1024**2, "MIB": 1024**2, "MB": 1000**2,
    "G": 1024**3, "GIB": 1024**3, "GB": 1000**3,
    "T": 1024**4, "TIB": 1024**4, "TB": 1000**4,
}


def parse_size_mib(spec: Union[str, int]) -> int:
    """
    Parse a size specification into whole MiB (rounded down).

    Plain integers are taken as MiB already. Strings accept binary units
    (K, M, G, T, KiB, MiB, ...) and decimal units (KB, MB, GB, TB).

    Args:
        spec: Size specification (e.g., 30720, "30GiB", "500G", "1TB")

    Returns:
        Size in MiB

    Raises:
        ValueError: If the specification cannot be parsed
    """
    if isinstance(spec, bool):
        raise ValueError(f"Invalid size specification: {spec!r}")
    if isinstance(spec, int):
        if spec < 0:
            raise ValueError(f"Negative size: {spec}")
        return spec

    match = re.match(r"^\s*(\d+(?:\.\d+)?)\s*([KMGT]?i?B?)\s*$", str(spec), re.IGNORECASE)
    if not match:
        raise ValueError(f"Invalid size specification: {spec}")

    value, unit = match.groups()
    unit = unit.upper()
    if unit not in _UNIT_BYTES:
        raise ValueError(f"Unknown unit: {unit}")

    # A bare number in a string is MiB, like the integer form
    if unit == "":
        return int(float(value))
    return int(float(value) * _UNIT_BYTES[unit] // MIB)
