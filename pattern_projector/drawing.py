"""
Rendering of the calibration canvas and projection overlays.

CanvasState is a plain snapshot of everything the renderer needs; the
CanvasRenderer owns the pixels (a BGR numpy image drawn with OpenCV).
"""

from dataclasses import dataclass, field
import logging
import math
from typing import Any, Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from pattern_projector.color_transition import hex_to_bgr, palette
from pattern_projector.display_settings import DisplaySettings
from pattern_projector.geometry import (
    DegenerateCalibrationError,
    Line,
    Point,
    check_is_concave,
    get_perspective_transform_from_points,
    is_finite_line,
    is_finite_point,
    matrix_to_list,
    point_to_dict,
    rect_corners,
    transform_line,
    transform_point,
    transform_points,
    translate_points,
)
from pattern_projector.measurement import MeasurementOverlay
from pattern_projector.units import Unit


logger = logging.getLogger(__name__)

MAJOR_LINE = 5
MAJOR_LINE_WIDTH = 2
MINOR_LINE_WIDTH = 1
PROJECTION_GRID_OUTSET = 8

# Beyond this cv2 cannot represent the coordinates; such lines are skipped
MAX_DRAW_COORDINATE = 1e6

CORNER_COLORS = ['#ef4444', '#22c55e', '#3b82f6', '#eab308']  # TL, TR, BR, BL
CHECKER_SIZE = 3
CHECKER_DARK = '#555555'
CHECKER_LIGHT = '#cccccc'
CENTER_LINE_COLOR = '#ff0000'
MEASURE_LINE_COLOR = '#9333ea'

# (label, width, height) of the reference sheet per unit
PAPER_SIZES = {
    Unit.CM: ('A4', 29.7, 21.0),
    Unit.IN: ('11x8.5', 11.0, 8.5),
}

FONT = cv2.FONT_HERSHEY_SIMPLEX


@dataclass
class CanvasState:
    """Serialisable snapshot of what to draw."""
    points: List[Point]
    width: float
    height: float
    calibration_transform: Optional[np.ndarray]  # physical units -> screen
    is_calibrating: bool = True
    active_corner: Optional[int] = None
    hover_corner: Optional[int] = None
    unit: Unit = Unit.IN
    display_settings: DisplaySettings = field(default_factory=DisplaySettings)
    transition_progress: float = 0.0
    is_precision_movement: bool = False

    @property
    def is_concave(self) -> bool:
        return check_is_concave(self.points)

    @classmethod
    def from_points(cls, points: Sequence[Point], width: float, height: float,
                    **kwargs) -> 'CanvasState':
        """Build a state, deriving the transform from the (possibly live) points."""
        transform = None
        if len(points) == 4:
            try:
                transform = get_perspective_transform_from_points(points, width, height)
            except DegenerateCalibrationError:
                logger.debug("No homography for current points")
        return cls(points=list(points), width=width, height=height,
                   calibration_transform=transform, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'points': [point_to_dict(p) for p in self.points],
            'width': self.width,
            'height': self.height,
            'calibration_transform': matrix_to_list(self.calibration_transform),
            'is_calibrating': self.is_calibrating,
            'active_corner': self.active_corner,
            'hover_corner': self.hover_corner,
            'unit': self.unit.value,
            'display_settings': self.display_settings.to_dict(),
            'transition_progress': self.transition_progress,
            'is_precision_movement': self.is_precision_movement,
            'is_concave': self.is_concave,
        }


def _drawable(p: Point) -> bool:
    return is_finite_point(p) and abs(p.x) < MAX_DRAW_COORDINATE and abs(p.y) < MAX_DRAW_COORDINATE


def _pt(p: Point) -> Tuple[int, int]:
    return int(round(p.x)), int(round(p.y))


def create_checkerboard(width: int, height: int, size: int = CHECKER_SIZE,
                        dark: str = CHECKER_DARK, light: str = CHECKER_LIGHT) -> np.ndarray:
    """BGR image tiled with size x size squares."""
    ys, xs = np.indices((height, width))
    mask = ((xs // size) + (ys // size)) % 2 == 0
    image = np.empty((height, width, 3), dtype=np.uint8)
    image[mask] = hex_to_bgr(dark)
    image[~mask] = hex_to_bgr(light)
    return image


class CanvasRenderer:
    """Draws CanvasState snapshots onto an OpenCV image."""

    def __init__(self, width: int = 1920, height: int = 1080):
        self.width = int(width)
        self.height = int(height)
        self.image = np.zeros((self.height, self.width, 3), dtype=np.uint8)

    def clear(self, color: str = '#000000') -> None:
        self.image[:, :] = hex_to_bgr(color)

    # ===== Primitives =====
    def draw_line(self, line: Line, color: str, thickness: int = 1) -> bool:
        """Draw a segment; non-finite or unrepresentable segments are skipped."""
        if not (_drawable(line[0]) and _drawable(line[1])):
            return False
        cv2.line(self.image, _pt(line[0]), _pt(line[1]), hex_to_bgr(color),
                 thickness, cv2.LINE_AA)
        return True

    def draw_dashed_line(self, line: Line, color: str, thickness: int = 1,
                         dash: float = 4.0, gap: float = 4.0) -> bool:
        if not (_drawable(line[0]) and _drawable(line[1])):
            return False
        a, b = line
        length = math.hypot(b.x - a.x, b.y - a.y)
        if length == 0:
            return False
        ux, uy = (b.x - a.x) / length, (b.y - a.y) / length
        pos = 0.0
        while pos < length:
            end = min(pos + dash, length)
            self.draw_line((Point(a.x + ux * pos, a.y + uy * pos),
                            Point(a.x + ux * end, a.y + uy * end)), color, thickness)
            pos = end + gap
        return True

    def draw_polygon(self, points: Sequence[Point], fill: Optional[str] = None,
                     stroke: Optional[str] = None, thickness: int = 1,
                     dashed: bool = False) -> bool:
        if len(points) < 3 or not all(_drawable(p) for p in points):
            return False
        if fill is not None:
            pts = np.array([_pt(p) for p in points], dtype=np.int32)
            cv2.fillPoly(self.image, [pts], hex_to_bgr(fill), cv2.LINE_AA)
        if stroke is not None:
            for i in range(len(points)):
                edge = (points[i], points[(i + 1) % len(points)])
                if dashed:
                    self.draw_dashed_line(edge, stroke, thickness)
                else:
                    self.draw_line(edge, stroke, thickness)
        return True

    def fill_polygon_with_pattern(self, points: Sequence[Point], pattern: np.ndarray) -> bool:
        """Fill a polygon with a same-sized BGR pattern image."""
        if len(points) < 3 or not all(_drawable(p) for p in points):
            return False
        mask = np.zeros((self.height, self.width), dtype=np.uint8)
        pts = np.array([_pt(p) for p in points], dtype=np.int32)
        cv2.fillPoly(mask, [pts], 255)
        selected = mask > 0
        self.image[selected] = pattern[selected]
        return True

    def draw_text(self, text: str, origin: Point, color: str, scale: float = 1.0,
                  thickness: int = 2, outline: Optional[str] = None,
                  outline_thickness: int = 4) -> bool:
        if not _drawable(origin):
            return False
        if outline is not None:
            cv2.putText(self.image, text, _pt(origin), FONT, scale, hex_to_bgr(outline),
                        thickness + outline_thickness, cv2.LINE_AA)
        cv2.putText(self.image, text, _pt(origin), FONT, scale, hex_to_bgr(color),
                    thickness, cv2.LINE_AA)
        return True

    def draw_crosshair(self, p: Point, size: float, color: str, thickness: int = 2) -> None:
        half = size / 2
        self.draw_line((Point(p.x - half, p.y), Point(p.x + half, p.y)), color, thickness)
        self.draw_line((Point(p.x, p.y - half), Point(p.x, p.y + half)), color, thickness)

    def draw_circle(self, p: Point, radius: float, color: str, thickness: int = 1) -> None:
        if _drawable(p):
            cv2.circle(self.image, _pt(p), int(round(radius)), hex_to_bgr(color),
                       thickness, cv2.LINE_AA)

    def draw_arrow(self, line: Line, color: str, thickness: int = 4) -> None:
        if _drawable(line[0]) and _drawable(line[1]):
            cv2.arrowedLine(self.image, _pt(line[0]), _pt(line[1]), hex_to_bgr(color),
                            thickness, cv2.LINE_AA, tipLength=0.05)

    # ===== Scene =====
    def render(self, cs: CanvasState) -> np.ndarray:
        """Draw a full frame for the snapshot and return the image."""
        colors = palette(cs.transition_progress)
        self.clear('#000000')

        if cs.is_calibrating:
            self.clear(colors['background'])
            self.draw_calibration(cs, colors)
        elif len(cs.points) == 4 and cs.is_concave:
            self.fill_polygon_with_pattern(cs.points, create_checkerboard(self.width, self.height))
        elif not cs.display_settings.overlay.disabled:
            self.draw_overlays(cs, colors)
        return self.image

    def draw_calibration(self, cs: CanvasState, colors: Dict[str, str]) -> None:
        if len(cs.points) == 4:
            if cs.is_concave:
                self.fill_polygon_with_pattern(cs.points,
                                               create_checkerboard(self.width, self.height))
            else:
                self.draw_polygon(cs.points, fill=colors['fill'], stroke=colors['grid_line'],
                                  thickness=MAJOR_LINE_WIDTH)
                if cs.calibration_transform is not None:
                    self.draw_grid(cs, colors['grid_line'], 0)

        for i, p in enumerate(cs.points):
            color = CORNER_COLORS[i % 4]
            if i != cs.active_corner:
                self.draw_circle(p, 10, color, 4)
            elif cs.is_precision_movement:
                self.draw_crosshair(p, 20, color, 2)
            else:
                self.draw_circle(p, 20, color, 4)
            if i == cs.hover_corner and i != cs.active_corner:
                self.draw_circle(p, 20, color, 1)

    def draw_overlays(self, cs: CanvasState, colors: Dict[str, str]) -> None:
        if cs.calibration_transform is None:
            return
        overlay = cs.display_settings.overlay
        stroke = colors['projection_grid_line']
        if overlay.grid:
            self.draw_grid(cs, stroke, PROJECTION_GRID_OUTSET)
        if overlay.border:
            self.draw_polygon(cs.points, stroke=stroke, thickness=5)
            self.draw_polygon(cs.points, stroke=colors['fill'], thickness=1, dashed=True)
        if overlay.paper:
            self.draw_paper_sheet(cs, stroke)
        if overlay.flip_lines:
            self.draw_center_lines(cs)

    def draw_grid(self, cs: CanvasState, color: str, outset: float) -> int:
        """
        Draw one line per physical unit through the calibration transform.

        Returns:
            int: number of lines drawn (skipped lines are not counted)
        """
        m = cs.calibration_transform
        drawn = 0
        for i in range(int(math.floor(cs.width)) + 1):
            major = i % MAJOR_LINE == 0 or i == cs.width
            thickness = MAJOR_LINE_WIDTH if major else MINOR_LINE_WIDTH
            line = transform_line((Point(i, -outset), Point(i, cs.height + outset)), m)
            drawn += self.draw_line(line, color, thickness)

        for i in range(int(math.floor(cs.height)) + 1):
            major = i % MAJOR_LINE == 0 or i == cs.height
            thickness = MAJOR_LINE_WIDTH if major else MINOR_LINE_WIDTH
            y = cs.height - i
            line = transform_line((Point(-outset, y), Point(cs.width + outset, y)), m)
            drawn += self.draw_line(line, color, thickness)

        if cs.is_calibrating:
            self.draw_dimension_labels(cs, color)
        return drawn

    def draw_dimension_labels(self, cs: CanvasState, color: str) -> None:
        inset = 36
        scale = 1.5
        thickness = 3
        width_text = f"{cs.width:g}{cs.unit.value}"
        height_text = f"{cs.height:g}{cs.unit.value}"
        bottom, left = transform_points(
            [Point(cs.width * 0.5, cs.height), Point(0, cs.height * 0.5)],
            cs.calibration_transform)
        (text_w, _), _ = cv2.getTextSize(width_text, FONT, scale, thickness)
        (_, text_h), _ = cv2.getTextSize(height_text, FONT, scale, thickness)
        self.draw_text(width_text, Point(bottom.x - text_w * 0.5, bottom.y - inset),
                       color, scale, thickness)
        self.draw_text(height_text, Point(left.x + inset, left.y + text_h * 0.5),
                       color, scale, thickness)

    def draw_paper_sheet(self, cs: CanvasState, color: str) -> None:
        text, paper_w, paper_h = PAPER_SIZES[cs.unit]
        corners = transform_points(
            translate_points(rect_corners(paper_w, paper_h),
                             (cs.width - paper_w) * 0.5, (cs.height - paper_h) * 0.5),
            cs.calibration_transform)
        self.draw_polygon(corners, stroke=color, thickness=4, dashed=True)

        center = transform_point(Point(cs.width * 0.5, cs.height * 0.5), cs.calibration_transform)
        (text_w, text_h), _ = cv2.getTextSize(text, FONT, 1.0, 2)
        self.draw_text(text, Point(center.x - text_w * 0.5, center.y + text_h * 0.5), color)

    def draw_center_lines(self, cs: CanvasState) -> None:
        m = cs.calibration_transform
        self.draw_line(transform_line(
            (Point(0, cs.height * 0.5), Point(cs.width, cs.height * 0.5)), m),
            CENTER_LINE_COLOR, 2)
        self.draw_line(transform_line(
            (Point(cs.width * 0.5, 0), Point(cs.width * 0.5, cs.height)), m),
            CENTER_LINE_COLOR, 2)

    def draw_measurements(self, overlay: MeasurementOverlay) -> None:
        for line in overlay.lines:
            self.draw_line(line, MEASURE_LINE_COLOR, 4)

        if overlay.selected is not None and is_finite_line(overlay.selected):
            self.draw_arrow(overlay.selected, MEASURE_LINE_COLOR, 4)
            self.draw_circle(overlay.selected[0], 30, MEASURE_LINE_COLOR, 4)
            self.draw_circle(overlay.selected[1], 30, MEASURE_LINE_COLOR, 4)

        if overlay.in_progress is not None:
            self.draw_line(overlay.in_progress, MEASURE_LINE_COLOR, 4)

        if overlay.readout_text and overlay.readout_anchor is not None:
            offset = 10
            anchor = overlay.readout_anchor
            self.draw_text(overlay.readout_text, Point(anchor.x + offset, anchor.y + offset),
                           '#000000', 0.8, 2, outline='#ffffff')

    def encode_png(self) -> bytes:
        ok, buf = cv2.imencode('.png', self.image)
        if not ok:
            raise RuntimeError("Failed to encode PNG")
        return buf.tobytes()
