"""
Duration literals shared by both query dialects.

Durations are handled internally as integer milliseconds. Parsing accepts
the Prometheus unit set (``y w d h m s ms``); formatting comes in two
flavours because each dialect's printer renders them differently.
"""

import re
from typing import List, Tuple

UNIT_MILLIS = {
    'y': 365 * 24 * 60 * 60 * 1000,
    'w': 7 * 24 * 60 * 60 * 1000,
    'd': 24 * 60 * 60 * 1000,
    'h': 60 * 60 * 1000,
    'm': 60 * 1000,
    's': 1000,
    'ms': 1,
    'us': 0.001,
    'µs': 0.001,
    'ns': 0.000001,
}

# Descending order Prometheus requires between components.
_PROMETHEUS_ORDER = ['y', 'w', 'd', 'h', 'm', 's', 'ms']

_COMPONENT = re.compile(r'(\d+(?:\.\d+)?)(ms|us|µs|ns|[ywdhms])')


class DurationError(ValueError):
    """Raised for a malformed duration literal."""

    def __init__(self, text: str):
        super().__init__(f'not a valid duration string: "{text}"')
        self.text = text


def _components(text: str) -> List[Tuple[str, str]]:
    parts = []
    pos = 0
    while pos < len(text):
        match = _COMPONENT.match(text, pos)
        if not match:
            raise DurationError(text)
        parts.append((match.group(1), match.group(2)))
        pos = match.end()
    if not parts:
        raise DurationError(text)
    return parts


def parse_duration(text: str, allow_fraction: bool = False) -> int:
    """Parse a duration literal into milliseconds.

    Args:
        text: Literal such as ``5m``, ``1h30m`` or ``100ms``
        allow_fraction: Accept Go-style fractional components (``1.5h``)
            and sub-millisecond units, in any order

    Returns:
        The duration in milliseconds

    Raises:
        DurationError: If the literal is malformed or negative
    """
    parts = _components(text)
    total = 0.0
    last_index = -1
    for number, unit in parts:
        if not allow_fraction:
            if '.' in number or unit not in _PROMETHEUS_ORDER:
                raise DurationError(text)
            index = _PROMETHEUS_ORDER.index(unit)
            if index <= last_index:
                raise DurationError(text)
            last_index = index
        total += float(number) * UNIT_MILLIS[unit]
    return int(round(total))


def seconds_to_millis(value: float) -> int:
    """Convert a bare number of seconds, as written in a range, to ms."""
    if value < 0:
        raise DurationError(str(value))
    return int(round(value * 1000))


def format_prometheus_duration(millis: int) -> str:
    """Render milliseconds the way the PromQL printer does.

    Years and weeks are only used when they divide the value exactly, so
    ``90d`` stays ``90d`` rather than becoming ``12w6d``.
    """
    if millis == 0:
        return "0s"
    result = ""
    remaining = millis
    for unit, exact in (('y', True), ('w', True), ('d', False), ('h', False),
                        ('m', False), ('s', False), ('ms', False)):
        size = UNIT_MILLIS[unit]
        if exact and remaining % size != 0:
            continue
        count = remaining // size
        if count > 0:
            result += f"{count}{unit}"
            remaining -= count * size
    return result


def format_logql_duration(millis: int) -> str:
    """Render milliseconds the way the LogQL printer does (d, h, m, s, ms)."""
    if millis == 0:
        return "0s"
    result = ""
    remaining = millis
    for unit in ('d', 'h', 'm', 's', 'ms'):
        size = UNIT_MILLIS[unit]
        count = remaining // size
        if count > 0:
            result += f"{count}{unit}"
            remaining -= count * size
    return result
