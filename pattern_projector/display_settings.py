"""
Display settings shared by the calibration canvas and the overlay renderer.
"""

from dataclasses import asdict, dataclass, field, fields
import logging
from typing import Any, Dict

logger = logging.getLogger(__name__)


@dataclass
class OverlaySettings:
    """Which overlays are drawn over the projected pattern."""
    disabled: bool = False
    grid: bool = False
    border: bool = False
    paper: bool = False
    flip_lines: bool = False
    flipped_pattern: bool = False


@dataclass
class DisplaySettings:
    overlay: OverlaySettings = field(default_factory=OverlaySettings)
    inverted: bool = False
    is_inverted_green: bool = False
    is_four_corners: bool = True

    def color_mode(self) -> int:
        """
        Colour mode index used by the transition ramp.

        The order matters: modes increase monotonically as the user cycles
        normal -> inverted green -> inverted.
        """
        if self.inverted and self.is_inverted_green:
            return 1
        if self.inverted:
            return 2
        return 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DisplaySettings':
        """Build settings from a stored dict; unknown keys and non-bool values are ignored."""
        if not isinstance(data, dict):
            return cls()
        overlay_data = data.get('overlay')
        overlay = OverlaySettings(**_bool_fields(overlay_data, OverlaySettings)) \
            if isinstance(overlay_data, dict) else OverlaySettings()
        return cls(overlay=overlay, **_bool_fields(data, cls))

    def updated(self, data: Dict[str, Any]) -> 'DisplaySettings':
        """Return a copy with the given (possibly partial) fields replaced."""
        merged = self.to_dict()
        for key, value in (data or {}).items():
            if key == 'overlay' and isinstance(value, dict):
                merged['overlay'].update(_bool_fields(value, OverlaySettings))
            elif isinstance(value, bool):
                merged[key] = value
        return DisplaySettings.from_dict(merged)


def _bool_fields(data: Dict[str, Any], settings_cls) -> Dict[str, bool]:
    """Fields of settings_cls present in data with a real bool value."""
    names = {f.name for f in fields(settings_cls) if f.type in (bool, 'bool')}
    ignored = [k for k, v in data.items() if k in names and not isinstance(v, bool)]
    if ignored:
        logger.warning("Ignoring non-boolean display settings: %s", ", ".join(sorted(ignored)))
    return {k: v for k, v in data.items() if k in names and isinstance(v, bool)}
