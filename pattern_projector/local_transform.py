"""
Local transform layer applied on top of calibration.

The reducer is a pure function: every transition returns a new matrix built
from the previous one and a single action, so the current matrix is the
entire state.
"""

from dataclasses import dataclass, field
from enum import Enum
import logging
from typing import Any, Dict, Optional, Union

import numpy as np

from pattern_projector.geometry import (
    Line,
    Point,
    as_matrix,
    flip_along,
    flip_horizontal,
    flip_vertical,
    identity,
    rotate_matrix_deg,
    rotate_to_horizontal,
    to_line,
    to_point,
    transform_point,
    translate,
)


logger = logging.getLogger(__name__)

ROTATE_STEP_DEGREES = 90


class LocalTransformActionType(str, Enum):
    SET = 'set'
    RESET = 'reset'
    TRANSLATE = 'translate'
    FLIP_HORIZONTAL = 'flip_horizontal'
    FLIP_VERTICAL = 'flip_vertical'
    ROTATE = 'rotate'
    ROTATE_TO_HORIZONTAL = 'rotate_to_horizontal'
    FLIP_ALONG = 'flip_along'
    RECENTER = 'recenter'
    ALIGN_TO_CENTER = 'align_to_center'


@dataclass(frozen=True)
class SetAction:
    local_transform: np.ndarray
    type: LocalTransformActionType = field(default=LocalTransformActionType.SET, init=False)


@dataclass(frozen=True)
class ResetAction:
    type: LocalTransformActionType = field(default=LocalTransformActionType.RESET, init=False)


@dataclass(frozen=True)
class TranslateAction:
    p: Point
    type: LocalTransformActionType = field(default=LocalTransformActionType.TRANSLATE, init=False)


@dataclass(frozen=True)
class FlipHorizontalAction:
    center_point: Point
    type: LocalTransformActionType = field(default=LocalTransformActionType.FLIP_HORIZONTAL, init=False)


@dataclass(frozen=True)
class FlipVerticalAction:
    center_point: Point
    type: LocalTransformActionType = field(default=LocalTransformActionType.FLIP_VERTICAL, init=False)


@dataclass(frozen=True)
class RotateAction:
    center_point: Point
    type: LocalTransformActionType = field(default=LocalTransformActionType.ROTATE, init=False)


@dataclass(frozen=True)
class RotateToHorizontalAction:
    line: Line
    type: LocalTransformActionType = field(default=LocalTransformActionType.ROTATE_TO_HORIZONTAL, init=False)


@dataclass(frozen=True)
class FlipAlongAction:
    line: Line
    type: LocalTransformActionType = field(default=LocalTransformActionType.FLIP_ALONG, init=False)


@dataclass(frozen=True)
class RecenterAction:
    center_point: Point
    layout_width: float
    layout_height: float
    type: LocalTransformActionType = field(default=LocalTransformActionType.RECENTER, init=False)


@dataclass(frozen=True)
class AlignToCenterAction:
    grid_center: Point
    line: Line
    type: LocalTransformActionType = field(default=LocalTransformActionType.ALIGN_TO_CENTER, init=False)


LocalTransformAction = Union[
    SetAction,
    ResetAction,
    TranslateAction,
    FlipHorizontalAction,
    FlipVerticalAction,
    RotateAction,
    RotateToHorizontalAction,
    FlipAlongAction,
    RecenterAction,
    AlignToCenterAction,
]


def _reduce_set(m: np.ndarray, action: SetAction) -> np.ndarray:
    return np.array(action.local_transform, dtype=np.float64)


def _reduce_reset(m: np.ndarray, action: ResetAction) -> np.ndarray:
    return identity()


def _reduce_translate(m: np.ndarray, action: TranslateAction) -> np.ndarray:
    return translate(action.p) @ m


def _reduce_flip_horizontal(m: np.ndarray, action: FlipHorizontalAction) -> np.ndarray:
    return flip_horizontal(action.center_point) @ m


def _reduce_flip_vertical(m: np.ndarray, action: FlipVerticalAction) -> np.ndarray:
    return flip_vertical(action.center_point) @ m


def _reduce_rotate(m: np.ndarray, action: RotateAction) -> np.ndarray:
    return rotate_matrix_deg(ROTATE_STEP_DEGREES, action.center_point) @ m


def _reduce_rotate_to_horizontal(m: np.ndarray, action: RotateToHorizontalAction) -> np.ndarray:
    return rotate_to_horizontal(action.line) @ m


def _reduce_flip_along(m: np.ndarray, action: FlipAlongAction) -> np.ndarray:
    return flip_along(action.line) @ m


def _reduce_recenter(m: np.ndarray, action: RecenterAction) -> np.ndarray:
    # Where the layout centre currently lands
    current = transform_point(
        Point(action.layout_width * 0.5, action.layout_height * 0.5), m)
    offset = Point(action.center_point[0] - current.x, action.center_point[1] - current.y)
    return translate(offset) @ m


def _reduce_align_to_center(m: np.ndarray, action: AlignToCenterAction) -> np.ndarray:
    start = action.line[0]
    offset = Point(action.grid_center[0] - start[0], action.grid_center[1] - start[1])
    return translate(offset) @ (rotate_to_horizontal(action.line) @ m)


_REDUCERS = {
    SetAction: _reduce_set,
    ResetAction: _reduce_reset,
    TranslateAction: _reduce_translate,
    FlipHorizontalAction: _reduce_flip_horizontal,
    FlipVerticalAction: _reduce_flip_vertical,
    RotateAction: _reduce_rotate,
    RotateToHorizontalAction: _reduce_rotate_to_horizontal,
    FlipAlongAction: _reduce_flip_along,
    RecenterAction: _reduce_recenter,
    AlignToCenterAction: _reduce_align_to_center,
}


def local_transform_reducer(local_transform: np.ndarray,
                            action: LocalTransformAction) -> np.ndarray:
    """
    Compute the next local transform.

    Args:
        local_transform: Current 3x3 transform (not modified)
        action: One of the LocalTransformAction variants

    Returns:
        New 3x3 transform

    Raises:
        TypeError: for an unknown action type
    """
    reducer = _REDUCERS.get(type(action))
    if reducer is None:
        raise TypeError(f"Unknown local transform action: {action!r}")
    return reducer(np.asarray(local_transform, dtype=np.float64), action)


def _require(payload: Dict[str, Any], key: str) -> Any:
    if key not in payload:
        raise ValueError(f"Missing required field: {key}")
    return payload[key]


def parse_local_transform_action(payload: Dict[str, Any]) -> LocalTransformAction:
    """
    Build an action from a JSON payload such as
    {'type': 'rotate', 'center_point': {'x': 0, 'y': 0}}.

    Raises:
        ValueError: if the payload is malformed
    """
    if not isinstance(payload, dict):
        raise ValueError("Action payload must be an object")
    try:
        action_type = LocalTransformActionType(payload.get('type'))
    except ValueError:
        raise ValueError(f"Unknown action type: {payload.get('type')!r}")

    try:
        if action_type is LocalTransformActionType.SET:
            return SetAction(as_matrix(_require(payload, 'local_transform')))
        if action_type is LocalTransformActionType.RESET:
            return ResetAction()
        if action_type is LocalTransformActionType.TRANSLATE:
            return TranslateAction(to_point(_require(payload, 'p')))
        if action_type is LocalTransformActionType.FLIP_HORIZONTAL:
            return FlipHorizontalAction(to_point(_require(payload, 'center_point')))
        if action_type is LocalTransformActionType.FLIP_VERTICAL:
            return FlipVerticalAction(to_point(_require(payload, 'center_point')))
        if action_type is LocalTransformActionType.ROTATE:
            return RotateAction(to_point(_require(payload, 'center_point')))
        if action_type is LocalTransformActionType.ROTATE_TO_HORIZONTAL:
            return RotateToHorizontalAction(to_line(_require(payload, 'line')))
        if action_type is LocalTransformActionType.FLIP_ALONG:
            return FlipAlongAction(to_line(_require(payload, 'line')))
        if action_type is LocalTransformActionType.RECENTER:
            return RecenterAction(to_point(_require(payload, 'center_point')),
                                  float(_require(payload, 'layout_width')),
                                  float(_require(payload, 'layout_height')))
        if action_type is LocalTransformActionType.ALIGN_TO_CENTER:
            return AlignToCenterAction(to_point(_require(payload, 'grid_center')),
                                       to_line(_require(payload, 'line')))
    except (KeyError, TypeError) as e:
        raise ValueError(f"Malformed {action_type.value} action: {e}") from e

    raise ValueError(f"Unhandled action type: {action_type.value}")


class LocalTransform:
    """
    Holds the current local transform and the in-progress pattern drag.

    Drags are tracked in physical space: the drag start is the pointer
    mapped through the screen -> physical perspective, and each move sets
    transform_start @ translate(delta).
    """

    def __init__(self, matrix: Optional[np.ndarray] = None):
        self.matrix = identity() if matrix is None else as_matrix(matrix)
        self.drag_start: Optional[Point] = None
        self.transform_start: Optional[np.ndarray] = None

    def dispatch(self, action: LocalTransformAction) -> np.ndarray:
        self.matrix = local_transform_reducer(self.matrix, action)
        return self.matrix

    def is_dragging(self) -> bool:
        return self.drag_start is not None

    def start_drag(self, p: Point, perspective: np.ndarray) -> None:
        self.drag_start = transform_point(p, perspective)
        self.transform_start = self.matrix.copy()

    def drag_to(self, p: Point, perspective: np.ndarray, axis_locked: bool = False) -> bool:
        """Move the pattern with the pointer; returns False when no drag is active."""
        if self.drag_start is None or self.transform_start is None:
            return False
        dest = transform_point(p, perspective)
        tx = dest.x - self.drag_start.x
        ty = dest.y - self.drag_start.y
        if axis_locked:
            if abs(tx) > abs(ty):
                ty = 0.0
            else:
                tx = 0.0
        self.matrix = self.transform_start @ translate(Point(tx, ty))
        return True

    def end_drag(self) -> None:
        self.drag_start = None
        self.transform_start = None
