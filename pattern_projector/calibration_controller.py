"""
Pointer and keyboard handling for editing the four calibration corners.

All handlers take an explicit `now` (seconds) instead of reading a clock, so
the precision-movement delay is a plain timestamp comparison.
"""

import logging
from typing import List, Optional, Sequence

from pattern_projector.calibration import MAX_POINTS, Calibrator
from pattern_projector.database import DB_interface
from pattern_projector.display_settings import DisplaySettings
from pattern_projector.geometry import Point, min_index, sqr_dist, to_point, translate_points


logger = logging.getLogger(__name__)

CORNER_MARGIN = 150
PRECISION_MOVEMENT_DELAY = 0.5  # seconds held still before precision engages
PRECISION_MOVEMENT_THRESHOLD = 15  # px
PRECISION_MOVEMENT_RATIO = 5
TOUCH_FILTER = 0.05
MOUSE_FILTER = 1.0
ARROW_KEY_STEP = 2.0
FINE_ARROW_KEY_STEP = 0.5

ARROW_KEYS = {
    'ArrowUp': (0, -1),
    'ArrowDown': (0, 1),
    'ArrowLeft': (-1, 0),
    'ArrowRight': (1, 0),
}


def nudge_points(points: Sequence[Point], index: int, key: str, fine: bool = False,
                 four_corners: bool = True) -> List[Point]:
    """
    Move corners by one arrow-key step.

    Args:
        points: Current corner points
        index: Active corner
        key: One of ARROW_KEYS
        fine: Use FINE_ARROW_KEY_STEP instead of ARROW_KEY_STEP
        four_corners: Move only the active corner; otherwise move all of them

    Returns:
        New list of points (input is not modified)
    """
    if key not in ARROW_KEYS:
        raise ValueError(f"Not an arrow key: {key!r}")
    step = FINE_ARROW_KEY_STEP if fine else ARROW_KEY_STEP
    ux, uy = ARROW_KEYS[key]
    dx, dy = ux * step, uy * step
    if not four_corners:
        return translate_points(points, dx, dy)
    result = list(points)
    p = result[index]
    result[index] = Point(p.x + dx, p.y + dy)
    return result


class CalibrationCanvasController:
    """State machine over pointer and key events for the calibration corners."""

    def __init__(self, calibrator: Calibrator, db: Optional[DB_interface] = None,
                 display_settings: Optional[DisplaySettings] = None):
        self.calibrator = calibrator
        self.db = db
        self.display_settings = display_settings or DisplaySettings()

        self.local_points: List[Point] = list(calibrator.points)
        self.active_corner: Optional[int] = None
        self.hover_corner: Optional[int] = None

        # Corner drag
        self.drag_offset: Optional[Point] = None
        self.drag_start_pointer: Optional[Point] = None
        self.drag_start_time: Optional[float] = None
        self.last_pointer: Optional[Point] = None
        self.precision_active = False
        self.precision_cancelled = False
        self.anchor_pointer: Optional[Point] = None
        self.anchor_corner: Optional[Point] = None

        # Pan of all corners
        self.pan_start: Optional[Point] = None
        self.pan_points_start: Optional[List[Point]] = None

    @property
    def points(self) -> List[Point]:
        """Points to draw: the in-progress set while a gesture is active."""
        return list(self.local_points)

    def is_dragging(self) -> bool:
        return self.drag_offset is not None

    def is_panning(self) -> bool:
        return self.pan_start is not None

    def sync_from_calibrator(self) -> None:
        """Drop any uncommitted edits and mirror the calibrator's points."""
        self._reset_gesture()
        self.local_points = list(self.calibrator.points)
        if self.active_corner is not None and self.active_corner >= len(self.local_points):
            self.active_corner = None

    def nearest_corner(self, p: Point) -> Optional[int]:
        """Index of the nearest corner within CORNER_MARGIN, else None."""
        if not self.local_points:
            return None
        distances = [sqr_dist(p, corner) for corner in self.local_points]
        i = min_index(distances)
        if distances[i] < CORNER_MARGIN * CORNER_MARGIN:
            return i
        return None

    # ===== Pointer events =====
    def handle_pointer_down(self, p: Point, now: float) -> None:
        p = to_point(p)
        self.local_points = list(self.calibrator.points)
        self.last_pointer = p

        if len(self.local_points) < MAX_POINTS:
            self.local_points.append(p)
            self.active_corner = len(self.local_points) - 1
            self._commit()
            return

        corner = self.nearest_corner(p)
        if corner is None:
            self.pan_start = p
            self.pan_points_start = list(self.local_points)
            return

        c = self.local_points[corner]
        self.active_corner = corner
        self.drag_offset = Point(c.x - p.x, c.y - p.y)
        self.drag_start_pointer = p
        self.drag_start_time = now
        self.precision_active = False
        self.precision_cancelled = False
        self.anchor_pointer = None
        self.anchor_corner = None

    def handle_pointer_move(self, p: Point, now: float) -> None:
        """Mouse move: drag at full sensitivity, or update the hover hint."""
        if self.is_dragging() or self.is_panning():
            self.handle_move(p, MOUSE_FILTER, now)
        else:
            self.handle_hover(p)

    def handle_touch_move(self, p: Point, now: float) -> None:
        self.handle_move(p, TOUCH_FILTER, now)

    def handle_move(self, p: Point, filter_factor: float, now: float) -> None:
        p = to_point(p)
        if self.is_panning():
            dx = p.x - self.pan_start.x
            dy = p.y - self.pan_start.y
            self.local_points = translate_points(self.pan_points_start, dx, dy)
            self.last_pointer = p
            return

        if not self.is_dragging() or self.active_corner is None:
            return

        self._update_precision(now)
        if not self.precision_active and not self.precision_cancelled:
            if sqr_dist(p, self.drag_start_pointer) > PRECISION_MOVEMENT_THRESHOLD ** 2:
                self.precision_cancelled = True
        self.last_pointer = p

        current = self.local_points[self.active_corner]
        if self.precision_active:
            target = Point(
                self.anchor_corner.x + (p.x - self.anchor_pointer.x) / PRECISION_MOVEMENT_RATIO,
                self.anchor_corner.y + (p.y - self.anchor_pointer.y) / PRECISION_MOVEMENT_RATIO,
            )
        else:
            target = Point(p.x + self.drag_offset.x, p.y + self.drag_offset.y)

        moved = Point(current.x + (target.x - current.x) * filter_factor,
                      current.y + (target.y - current.y) * filter_factor)
        dx, dy = moved.x - current.x, moved.y - current.y

        if self.display_settings.is_four_corners:
            self.local_points[self.active_corner] = moved
        else:
            self.local_points = translate_points(self.local_points, dx, dy)

    def tick(self, now: float) -> bool:
        """Evaluate the precision delay without a move; returns precision_active."""
        if self.is_dragging():
            self._update_precision(now)
        return self.precision_active

    def handle_pointer_up(self, now: Optional[float] = None) -> bool:
        """
        Finish a drag or pan and persist the result.

        Returns:
            bool: False when there was no gesture to finish
        """
        if not self.is_dragging() and not self.is_panning():
            return False
        self._reset_gesture()
        self._commit()
        return True

    def handle_hover(self, p: Point) -> Optional[int]:
        self.hover_corner = self.nearest_corner(to_point(p))
        return self.hover_corner

    # ===== Keyboard =====
    def handle_key_down(self, key: str, shift: bool = False, fine: bool = False) -> bool:
        """
        Handle a key press.

        Returns:
            bool: True if the key was consumed
        """
        if key == 'Tab':
            if shift:
                settings = self.display_settings
                settings.is_four_corners = not settings.is_four_corners
                if self.db is not None:
                    self.db.save_display_settings(settings.to_dict())
                return True
            if not self.local_points:
                return False
            if self.active_corner is None:
                self.active_corner = 0
            else:
                self.active_corner = (self.active_corner + 1) % len(self.local_points)
            return True

        if key == 'Escape':
            self.active_corner = None
            return True

        if key in ARROW_KEYS:
            if self.active_corner is None or self.is_dragging() or self.is_panning():
                return False
            self.local_points = nudge_points(
                self.local_points, self.active_corner, key, fine,
                self.display_settings.is_four_corners)
            self._commit()
            return True

        return False

    # ===== Internals =====
    def _update_precision(self, now: float) -> None:
        if self.precision_active or self.precision_cancelled or self.drag_start_time is None:
            return
        if now - self.drag_start_time > PRECISION_MOVEMENT_DELAY:
            # Re-anchor on the last known position so the corner does not jump
            self.precision_active = True
            self.anchor_pointer = self.last_pointer or self.drag_start_pointer
            self.anchor_corner = self.local_points[self.active_corner]
            logger.debug("Precision movement engaged for corner %s", self.active_corner)

    def _reset_gesture(self) -> None:
        self.drag_offset = None
        self.drag_start_pointer = None
        self.drag_start_time = None
        self.precision_active = False
        self.precision_cancelled = False
        self.anchor_pointer = None
        self.anchor_corner = None
        self.pan_start = None
        self.pan_points_start = None

    def _commit(self) -> None:
        """Push local points into the calibrator and persist when complete."""
        self.calibrator.set_calibration_points(self.local_points)
        if self.calibrator.is_degenerate() and self.calibrator.is_complete():
            logger.warning("Calibration points are degenerate, grid disabled")
        if self.db is not None and self.calibrator.is_complete():
            if not self.calibrator.save(self.db):
                logger.error("Failed to persist calibration points")
