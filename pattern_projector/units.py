"""
Units of measure for the physical calibration rectangle.
"""

from enum import Enum
from typing import Any, Optional


# Defined by CSS: content pixels per physical inch
CSS_PIXELS_PER_INCH = 96
CM_PER_INCH = 2.54


class Unit(str, Enum):
    IN = 'in'
    CM = 'cm'


def parse_unit(value: Any) -> Optional[Unit]:
    """Parse a unit from a payload value ('in', 'IN', 'cm', Unit)."""
    if isinstance(value, Unit):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        for unit in Unit:
            if normalized == unit.value:
                return unit
    return None


def pixels_per_unit(unit: Unit) -> float:
    """Content pixels per physical unit (96 per inch, 96/2.54 per cm)."""
    if unit is Unit.CM:
        return CSS_PIXELS_PER_INCH / CM_PER_INCH
    return float(CSS_PIXELS_PER_INCH)


def pixels_to_units(pixels: float, unit: Unit) -> float:
    """Convert content pixels to inches or centimetres."""
    inches = pixels / CSS_PIXELS_PER_INCH
    if unit is Unit.CM:
        return inches * CM_PER_INCH
    return inches


def unit_label(unit: Unit) -> str:
    """Short label used after measured lengths."""
    return 'cm' if unit is Unit.CM else '"'
