"""
On-screen measurement lines.

Lines are stored in content space (physical units at the content pixel
density, before the local transform) so they stay attached to the pattern
while it is panned, rotated or flipped. They are drawn through
calibration_transform @ local_transform.
"""

from dataclasses import dataclass, field
import logging
import math
from typing import Any, List, NamedTuple, Optional

import numpy as np

from pattern_projector.database import DB_interface
from pattern_projector.geometry import (
    Line,
    Point,
    angle_deg,
    constrain_in_space,
    identity,
    inverse,
    is_finite_line,
    is_finite_matrix,
    point_to_dict,
    sqr_dist,
    sqr_dist_to_line,
    to_line,
    to_point,
    transform_line,
    transform_point,
)
from pattern_projector.units import Unit, pixels_to_units, unit_label


logger = logging.getLogger(__name__)

ENDPOINT_SQR_DISTANCE = 2000
LINE_SQR_DISTANCE = 600
DELETE_KEYS = ('Backspace', 'Delete')


class Readout(NamedTuple):
    length: float  # in the active unit
    angle: float  # signed angle_deg of the line
    unit: Unit

    @property
    def protractor_degrees(self) -> str:
        """Counter-clockwise reading in [0, 360) as shown next to the line."""
        a = -self.angle
        # -0.0 also lands here and wraps to "0" below
        if a <= 0:
            a += 360
        label = f"{a:.0f}"
        if label == "360":
            label = "0"
        return label

    @property
    def label(self) -> str:
        return f"{self.length:.2f}{unit_label(self.unit)} {self.protractor_degrees}°"


def measurement_readout(line: Line, unit: Unit) -> Readout:
    """Length and angle of a content-space line (96 content px per inch)."""
    p0, p1 = line
    length = pixels_to_units(math.sqrt(sqr_dist(p0, p1)), unit)
    return Readout(length=length, angle=angle_deg(line), unit=unit)


@dataclass
class MeasurementOverlay:
    """Screen-space view of the measurement state for the renderer."""
    lines: List[Line] = field(default_factory=list)
    selected: Optional[Line] = None
    in_progress: Optional[Line] = None
    readout_text: Optional[str] = None
    readout_anchor: Optional[Point] = None


class MeasurementController:
    """Draw, select, drag and delete measurement lines."""

    def __init__(self, db: Optional[DB_interface] = None, unit: Unit = Unit.IN):
        self.db = db
        self.unit = unit
        self.lines: List[Line] = []
        self.selected_line: Optional[int] = None
        self.selected_end: Optional[int] = None
        self.drag_offset: Optional[Point] = None
        self.start_point: Optional[Point] = None
        self.moving_point: Optional[Point] = None
        self.axis_constrained = False
        self.measuring = False

        self.calibration_transform = identity()
        self.local_transform = identity()

    # ===== Transforms =====
    def set_transforms(self, calibration_transform: Optional[np.ndarray],
                       local_transform: Optional[np.ndarray] = None) -> None:
        """
        Args:
            calibration_transform: Content space -> screen, None while the
                calibration is incomplete or degenerate
            local_transform: Content space -> content space
        """
        self.calibration_transform = None if calibration_transform is None \
            else np.asarray(calibration_transform, dtype=np.float64)
        if local_transform is not None:
            self.local_transform = np.asarray(local_transform, dtype=np.float64)

    def set_unit(self, unit: Unit) -> None:
        self.unit = unit

    def has_calibration(self) -> bool:
        return self.calibration_transform is not None

    def _calibration(self) -> np.ndarray:
        if self.calibration_transform is None:
            return np.full((3, 3), np.nan)
        return self.calibration_transform

    @property
    def screen_transform(self) -> np.ndarray:
        """Content -> screen."""
        return self._calibration() @ self.local_transform

    @property
    def storage_transform(self) -> np.ndarray:
        """Screen -> content, i.e. inverse(local) @ inverse(calibration)."""
        return inverse(self.local_transform) @ inverse(self._calibration())

    @property
    def perspective(self) -> np.ndarray:
        """Screen -> content space before the local transform."""
        return inverse(self._calibration())

    def is_drawing(self) -> bool:
        return self.start_point is not None

    def set_measuring(self, measuring: bool) -> None:
        self.measuring = bool(measuring)
        if not self.measuring:
            self.start_point = None
            self.moving_point = None

    # ===== Pointer events =====
    def handle_pointer_down(self, p: Point) -> bool:
        """Returns True if the event was consumed by the measurement layer."""
        p = to_point(p)

        if self.start_point is None and self.lines:
            m = self.screen_transform
            # Endpoints of the selected line take priority over line bodies
            if self.selected_line is not None:
                line = transform_line(self.lines[self.selected_line], m)
                if is_finite_line(line):
                    for end in (0, 1):
                        if sqr_dist(p, line[end]) < ENDPOINT_SQR_DISTANCE:
                            self.drag_offset = Point(p.x - line[end].x, p.y - line[end].y)
                            self.selected_end = end
                            return True

            for i, stored in enumerate(self.lines):
                line = transform_line(stored, m)
                if not is_finite_line(line):
                    continue
                if sqr_dist_to_line(line, p) < LINE_SQR_DISTANCE:
                    self.selected_line = None if i == self.selected_line else i
                    return True

            self.selected_line = None
            self.selected_end = None

        if not self.measuring or not self.has_calibration():
            return False

        if self.start_point is None:
            self.start_point = p
            self.moving_point = p
        return True

    def handle_pointer_move(self, p: Point, buttons: int = 1) -> bool:
        p = to_point(p)
        if self.start_point is not None and self.measuring:
            self.moving_point = p

        if buttons == 0 and self.selected_end is not None:
            # Button released outside of the canvas
            self.selected_end = None
            return True

        if self.selected_line is None or self.selected_end is None or self.drag_offset is None:
            return self.start_point is not None
        if not self.has_calibration():
            return False

        pt = transform_point(Point(p.x - self.drag_offset.x, p.y - self.drag_offset.y),
                             self.storage_transform)
        line = self.lines[self.selected_line]
        if self.selected_end == 0:
            self.lines[self.selected_line] = (pt, line[1])
        else:
            self.lines[self.selected_line] = (line[0], pt)
        return True

    def handle_pointer_up(self, p: Point) -> bool:
        """
        Finish the line being drawn.

        Returns:
            bool: True if a new line was stored
        """
        was_dragging_end = self.selected_end is not None
        self.selected_end = None
        self.drag_offset = None
        if self.start_point is None or not self.measuring:
            if was_dragging_end:
                self.save()
            return False
        if not self.has_calibration():
            logger.warning("Discarding measurement line, no calibration transform")
            self.start_point = None
            self.moving_point = None
            return False

        p = to_point(p)
        start = self.start_point
        end = self._constrained(start, p)
        self.start_point = None
        self.moving_point = None
        self.measuring = False

        line = transform_line((start, end), self.storage_transform)
        if not is_finite_line(line):
            logger.warning("Dropping measurement line, transform is singular")
            return False

        self.lines.append(line)
        self.selected_line = len(self.lines) - 1
        self.save()
        return True

    # ===== Keyboard =====
    def handle_key_down(self, key: str, shift: bool = False) -> bool:
        handled = False
        if key in DELETE_KEYS and self.selected_line is not None:
            self.delete_line()
            handled = True
        self.axis_constrained = shift
        return handled

    def handle_key_up(self, key: str, shift: bool = False) -> None:
        self.axis_constrained = shift

    # ===== Line management =====
    def delete_line(self, index: Optional[int] = None) -> bool:
        """Remove a line (the selected one by default) and reselect a neighbour."""
        if index is None:
            index = self.selected_line
        if index is None or not 0 <= index < len(self.lines):
            return False
        count = len(self.lines)
        del self.lines[index]
        if index == self.selected_line or self.selected_line is None:
            new_selection = count - 2 if index == 0 else index - 1
            self.selected_line = new_selection if new_selection >= 0 else None
        elif self.selected_line > index:
            self.selected_line -= 1
        self.selected_end = None
        self.save()
        return True

    def clear(self) -> None:
        """Forget all lines, e.g. when new content is loaded."""
        self.lines = []
        self.selected_line = None
        self.selected_end = None
        self.drag_offset = None
        self.start_point = None
        self.moving_point = None
        self.save()

    # ===== Readout and overlay =====
    def _constrained(self, start: Point, p: Point) -> Point:
        if not self.axis_constrained:
            return p
        perspective = self.perspective
        if not is_finite_matrix(perspective):
            return p
        return constrain_in_space(p, start, perspective, self._calibration())

    def current_readout(self) -> Optional[Readout]:
        """Readout for the in-progress line, else for the selected line."""
        if self.start_point is not None and self.moving_point is not None:
            dest = self._constrained(self.start_point, self.moving_point)
            line = transform_line((self.start_point, dest), self.perspective)
        elif self.selected_line is not None:
            line = transform_line(self.lines[self.selected_line], self.local_transform)
        else:
            return None
        if not is_finite_line(line):
            return None
        return measurement_readout(line, self.unit)

    def overlay(self) -> MeasurementOverlay:
        m = self.screen_transform
        overlay = MeasurementOverlay()
        for i, stored in enumerate(self.lines):
            line = transform_line(stored, m)
            if not is_finite_line(line):
                continue
            if i == self.selected_line:
                overlay.selected = line
            else:
                overlay.lines.append(line)

        if self.start_point is not None and self.moving_point is not None:
            overlay.in_progress = (self.start_point,
                                   self._constrained(self.start_point, self.moving_point))

        readout = self.current_readout()
        if readout is not None:
            overlay.readout_text = readout.label
            if overlay.in_progress is not None:
                overlay.readout_anchor = overlay.in_progress[0]
            elif overlay.selected is not None:
                overlay.readout_anchor = overlay.selected[1]
        return overlay

    # ===== Persistence =====
    def lines_to_list(self) -> List[List[dict]]:
        return [[point_to_dict(p) for p in line] for line in self.lines]

    def lines_from_list(self, data: Any) -> bool:
        """Replace the lines from a stored blob; malformed data is ignored."""
        if not isinstance(data, list):
            return False
        lines = []
        for item in data:
            try:
                line = to_line(item)
            except (KeyError, TypeError, ValueError):
                logger.warning("Ignoring malformed stored measurement line")
                return False
            if not is_finite_line(line):
                return False
            lines.append(line)
        self.lines = lines
        self.selected_line = None
        self.selected_end = None
        return True

    def save(self) -> bool:
        if self.db is None:
            return False
        return self.db.save_lines(self.lines_to_list())

    def load(self) -> bool:
        if self.db is None:
            return False
        return self.lines_from_list(self.db.load_lines())
