# replacement/offset.py
#
# Continuity offset between an archived meter and its replacement.
#
#   offset     = old_final_reading - new_initial_reading
#   continuous = raw_new_reading + offset
#
# All arithmetic is Decimal; binary floats would drift over a meter's life.

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Union

ReadingInput = Union[str, int, float, Decimal]

# Wh resolution; every stored reading and offset has exactly this many places
READING_RESOLUTION = Decimal("0.001")


def parse_reading(value: ReadingInput) -> Decimal:
    """
    Parse a kWh reading as entered by the user or read from a device.
    Floats go through repr() so 0.1 stays 0.1. The result is rounded half
    up to Wh (3 places). Raises ValueError for anything that is not a
    finite, non-negative number.
    """
    if isinstance(value, bool):
        raise ValueError(f"Not a reading: {value!r}")
    if isinstance(value, float):
        value = repr(value)
    try:
        reading = Decimal(str(value).strip().replace(",", "."))
    except InvalidOperation as exc:
        raise ValueError(f"Not a number: {value!r}") from exc

    if not reading.is_finite():
        raise ValueError(f"Reading must be finite, got {value!r}")
    if reading < 0:
        raise ValueError(f"Reading must not be negative, got {value!r}")
    try:
        return reading.quantize(READING_RESOLUTION, rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise ValueError(f"Reading out of range: {value!r}") from exc


def compute_offset(old_final_reading: ReadingInput, new_initial_reading: ReadingInput) -> Decimal:
    """Offset to add to every future reading of the new meter."""
    return parse_reading(old_final_reading) - parse_reading(new_initial_reading)


def continuous_reading(raw_reading: ReadingInput, offset: Decimal) -> Decimal:
    return parse_reading(raw_reading) + offset


def chain_offset(offsets: Iterable[Decimal]) -> Decimal:
    """
    Total offset of a meter that replaced a meter that itself replaced
    another one: offsets along the chain simply add up.
    """
    return sum(offsets, Decimal("0"))
