"""
Calibration transform manager.
Owns the four calibration corners and derives the projective transforms
between the canonical physical rectangle and the screen.
"""

import logging
import math
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from pattern_projector.database import DB_interface
from pattern_projector.geometry import (
    DegenerateCalibrationError,
    Point,
    check_is_concave,
    get_perspective_transform_from_points,
    inverse,
    point_to_dict,
    to_point,
)
from pattern_projector.units import Unit, parse_unit, pixels_per_unit


logger = logging.getLogger(__name__)

MAX_POINTS = 4  # One point per vertex in rectangle

# Points that fit on a small phone screen, used when the viewport is unknown
SE_POINTS = [
    Point(100.0, 300.0),
    Point(300.0, 300.0),
    Point(300.0, 600.0),
    Point(100.0, 600.0),
]


def default_points(viewport: Optional[Tuple[float, float]] = None) -> List[Point]:
    """Default corner quad, inset within the viewport when its size is known."""
    if not viewport:
        return list(SE_POINTS)
    w, h = viewport
    if w <= 0 or h <= 0:
        return list(SE_POINTS)
    left, right = w * 0.2, w * 0.8
    top, bottom = h * 0.2, h * 0.8
    return [
        Point(left, top),
        Point(right, top),
        Point(right, bottom),
        Point(left, bottom),
    ]


def parse_points(data: Any) -> Optional[List[Point]]:
    """Parse a stored [{x, y} x 4] blob; None if missing or malformed."""
    if not isinstance(data, list) or len(data) != MAX_POINTS:
        return None
    points = []
    for item in data:
        try:
            p = to_point(item)
        except (KeyError, TypeError, ValueError):
            return None
        if not (math.isfinite(p.x) and math.isfinite(p.y)):
            return None
        points.append(p)
    return points


class Calibrator:
    """Handles perspective transformation calibration and coordinate conversion."""

    def __init__(self, width: float = 24, height: float = 18, unit: Unit = Unit.IN,
                 points: Optional[Sequence[Point]] = None):
        self.points: List[Point] = []
        self.width = 0.0
        self.height = 0.0
        self.unit = unit
        self.calibration_transform = None  # Canonical (units) -> screen
        self.perspective = None  # Screen -> canonical (units)
        self.content_calibration_transform = None  # Content pixels -> screen
        self.content_perspective = None  # Screen -> content pixels
        self._degenerate = False

        self._set_dimensions(width, height)
        if points is not None:
            self.points = [to_point(p) for p in points]
        self._recompute_warp_matrix()

    @staticmethod
    def check_dimension(name: str, value: float) -> float:
        value = float(value)
        if not math.isfinite(value) or value <= 0:
            raise ValueError(f"{name} must be a positive number")
        return value

    def _set_dimensions(self, width: float, height: float) -> None:
        self.width = self.check_dimension("width", width)
        self.height = self.check_dimension("height", height)

    def set_calibration_points(self, points: Sequence[Point]) -> bool:
        """
        Replace the corner points and recompute the transforms.

        Args:
            points: Up to 4 screen points ordered TL, TR, BR, BL

        Returns:
            bool: True if a homography is available afterwards
        """
        if len(points) > MAX_POINTS:
            raise ValueError(f"At most {MAX_POINTS} calibration points are allowed")
        self.points = [to_point(p) for p in points]
        self._recompute_warp_matrix()
        return self.is_calibrated()

    def set_dimensions(self, width: float, height: float) -> None:
        """Set the physical rectangle size in the current unit."""
        self._set_dimensions(width, height)
        self._recompute_warp_matrix()

    def set_unit(self, unit: Unit) -> None:
        parsed = parse_unit(unit)
        if parsed is None:
            raise ValueError(f"Unknown unit: {unit!r}")
        self.unit = parsed
        self._recompute_warp_matrix()

    @property
    def content_pt_density(self) -> float:
        """Content pixels per physical unit."""
        return pixels_per_unit(self.unit)

    def is_complete(self) -> bool:
        return len(self.points) == MAX_POINTS

    def is_degenerate(self) -> bool:
        """Fewer than 4 points, or no homography exists for them."""
        return not self.is_complete() or self._degenerate

    def is_concave(self) -> bool:
        return self.is_complete() and check_is_concave(self.points)

    def is_calibrated(self) -> bool:
        """Check if a homography is available."""
        return self.calibration_transform is not None

    def is_valid(self) -> bool:
        """Calibrated and convex: safe to draw a grid with."""
        return self.is_calibrated() and not self.is_concave()

    def get_perspective(self, pt_density: float = 1.0) -> Optional[np.ndarray]:
        """Screen -> canonical rectangle at pt_density points per unit."""
        if not self.is_calibrated():
            return None
        return get_perspective_transform_from_points(
            self.points, self.width, self.height, pt_density, inverse=True)

    def get_calibration_transform(self, pt_density: float = 1.0) -> Optional[np.ndarray]:
        """Canonical rectangle at pt_density points per unit -> screen."""
        if not self.is_calibrated():
            return None
        return get_perspective_transform_from_points(
            self.points, self.width, self.height, pt_density)

    def get_calibration_data(self) -> Dict[str, Any]:
        """Get calibration data for saving."""
        return {
            "points": [point_to_dict(p) for p in self.points],
            "width": self.width,
            "height": self.height,
            "unit": self.unit.value,
        }

    def load_calibration_data(self, data: Dict[str, Any]) -> bool:
        """Load calibration data from saved data."""
        if not isinstance(data, dict):
            return False
        unit = parse_unit(data.get("unit", self.unit))
        if unit is not None:
            self.unit = unit
        try:
            self._set_dimensions(data.get("width", self.width), data.get("height", self.height))
        except (TypeError, ValueError):
            logger.warning("Ignoring invalid stored calibration dimensions")
        points = parse_points(data.get("points"))
        if points is not None:
            self.points = points

        self._recompute_warp_matrix()
        return self.is_calibrated()

    def save(self, db: DB_interface) -> bool:
        """Persist the corner points and the calibration record."""
        if not self.is_complete():
            return False
        ok = db.save_points([point_to_dict(p) for p in self.points])
        return db.save_calibration(self.get_calibration_data()) and ok

    def load(self, db: DB_interface, viewport: Optional[Tuple[float, float]] = None) -> bool:
        """
        Restore state from the store, falling back to default points.

        Returns:
            bool: True if stored points were found and used
        """
        record = db.load_calibration()
        if isinstance(record, dict):
            self.load_calibration_data({k: v for k, v in record.items() if k != "points"})

        points = parse_points(db.load_points())
        if points is None:
            logger.info("No stored calibration points, using defaults")
            self.points = default_points(viewport)
            self._recompute_warp_matrix()
            return False

        self.points = points
        self._recompute_warp_matrix()
        return True

    def _recompute_warp_matrix(self) -> None:
        """Recompute the calibration homographies using current state."""
        self.calibration_transform = None
        self.perspective = None
        self.content_calibration_transform = None
        self.content_perspective = None
        self._degenerate = False

        if not self.is_complete():
            return

        try:
            self.calibration_transform = get_perspective_transform_from_points(
                self.points, self.width, self.height, 1.0)
            self.content_calibration_transform = get_perspective_transform_from_points(
                self.points, self.width, self.height, self.content_pt_density)
        except DegenerateCalibrationError as e:
            logger.debug("Degenerate calibration: %s", e)
            self._degenerate = True
            self.calibration_transform = None
            self.content_calibration_transform = None
            return

        self.perspective = inverse(self.calibration_transform)
        self.content_perspective = inverse(self.content_calibration_transform)
