"""
Planar projective geometry for projector calibration.
Handles point/line transforms, 4-point homography estimation and the
matrix builders used by the local transform layer.
"""

import logging
import math
from typing import Iterable, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np


logger = logging.getLogger(__name__)


class Point(NamedTuple):
    """Screen or physical space point. Immutable."""
    x: float
    y: float


Line = Tuple[Point, Point]


class GeometryError(ValueError):
    """Base class for geometry failures."""


class DegenerateCalibrationError(GeometryError):
    """Raised when a homography is undefined (collinear or missing corners)."""


class SingularTransformError(GeometryError):
    """Raised when a transform cannot be inverted."""


# Relative tolerance for treating three points as collinear
COLLINEAR_EPSILON = 1e-10


def to_point(p) -> Point:
    """Coerce a Point, (x, y) sequence or {'x', 'y'} dict to a Point."""
    if isinstance(p, Point):
        return p
    if isinstance(p, dict):
        return Point(float(p['x']), float(p['y']))
    x, y = p
    return Point(float(x), float(y))


def to_line(line) -> Line:
    p0, p1 = line
    return (to_point(p0), to_point(p1))


def identity() -> np.ndarray:
    return np.identity(3, dtype=np.float64)


def as_matrix(m) -> np.ndarray:
    """Return m as a float64 3x3 array (copying nested lists)."""
    arr = np.array(m, dtype=np.float64)
    if arr.shape != (3, 3):
        raise ValueError(f"Transform must be 3x3, got shape {arr.shape}")
    return arr


def is_finite_point(p: Point) -> bool:
    return math.isfinite(p.x) and math.isfinite(p.y)


def is_finite_line(line: Line) -> bool:
    return is_finite_point(line[0]) and is_finite_point(line[1])


def is_finite_matrix(m: Optional[np.ndarray]) -> bool:
    return m is not None and bool(np.all(np.isfinite(m)))


def transform_point(p: Point, m: np.ndarray) -> Point:
    """
    Apply a 3x3 homogeneous transform to a point.

    Args:
        p: Point to transform
        m: 3x3 transform

    Returns:
        Euclidean point. Non-finite when the homogeneous w is zero.
    """
    x, y = p
    v = m @ np.array([x, y, 1.0])
    with np.errstate(divide='ignore', invalid='ignore'):
        return Point(float(v[0] / v[2]), float(v[1] / v[2]))


def transform_points(points: Iterable[Point], m: np.ndarray) -> List[Point]:
    """Apply a 3x3 homogeneous transform to many points at once."""
    pts = np.array([[p[0], p[1]] for p in points], dtype=np.float64)
    if pts.size == 0:
        return []
    homogeneous = np.hstack([pts, np.ones((pts.shape[0], 1))])
    q = (m @ homogeneous.T).T
    with np.errstate(divide='ignore', invalid='ignore'):
        xy = q[:, :2] / q[:, 2:3]
    return [Point(float(x), float(y)) for x, y in xy]


def transform_line(line: Line, m: np.ndarray) -> Line:
    p0, p1 = transform_points(line, m)
    return (p0, p1)


def translate_points(points: Iterable[Point], dx: float, dy: float) -> List[Point]:
    return [Point(p[0] + dx, p[1] + dy) for p in points]


def _cross(o: Point, a: Point, b: Point) -> float:
    """z component of (a - o) x (b - o)."""
    return (a[0] - o[0]) * (b[1] - o[1]) - (a[1] - o[1]) * (b[0] - o[0])


def _has_collinear_triple(points: Sequence[Point]) -> bool:
    n = len(points)
    for i in range(n):
        for j in range(i + 1, n):
            for k in range(j + 1, n):
                a, b, c = points[i], points[j], points[k]
                scale = max(sqr_dist(a, b), sqr_dist(a, c), sqr_dist(b, c), 1e-300)
                if abs(_cross(a, b, c)) <= COLLINEAR_EPSILON * scale:
                    return True
    return False


def get_perspective_transform(src: Sequence[Point], dst: Sequence[Point]) -> np.ndarray:
    """
    Compute the homography mapping exactly 4 source points onto 4 destination points.

    Builds the 8x8 linear system from the point correspondences and solves for
    the 8 unknowns with the last matrix entry fixed to 1.

    Args:
        src: 4 source points
        dst: 4 destination points

    Returns:
        3x3 homography

    Raises:
        DegenerateCalibrationError: if either quad has 3+ collinear points or
            the system is singular
    """
    if len(src) != 4 or len(dst) != 4:
        raise DegenerateCalibrationError(
            f"Need exactly 4 point correspondences, got {len(src)} and {len(dst)}")

    src = [to_point(p) for p in src]
    dst = [to_point(p) for p in dst]
    if _has_collinear_triple(src) or _has_collinear_triple(dst):
        raise DegenerateCalibrationError("Three or more corners are collinear")

    a = np.zeros((8, 8), dtype=np.float64)
    b = np.zeros(8, dtype=np.float64)
    for i, ((x, y), (u, v)) in enumerate(zip(src, dst)):
        a[i] = [x, y, 1.0, 0.0, 0.0, 0.0, -x * u, -y * u]
        a[i + 4] = [0.0, 0.0, 0.0, x, y, 1.0, -x * v, -y * v]
        b[i] = u
        b[i + 4] = v

    try:
        h = np.linalg.solve(a, b)
    except np.linalg.LinAlgError as e:
        raise DegenerateCalibrationError(f"Singular homography system: {e}") from e

    return np.append(h, 1.0).reshape(3, 3)


def get_dst_vertices(width: float, height: float, pt_density: float = 1.0) -> List[Point]:
    """Canonical rectangle corners (TL, TR, BR, BL) for a physical size."""
    return rect_corners(width * pt_density, height * pt_density)


def get_perspective_transform_from_points(points: Sequence[Point], width: float, height: float,
                                          pt_density: float = 1.0,
                                          inverse: bool = False) -> np.ndarray:
    """
    Homography between the canonical physical rectangle and the screen corners.

    Args:
        points: 4 screen corners (TL, TR, BR, BL)
        width, height: Physical size in units
        pt_density: Canonical points per unit
        inverse: If True return screen -> canonical instead of canonical -> screen

    Returns:
        3x3 homography
    """
    dst = get_dst_vertices(width, height, pt_density)
    if inverse:
        return get_perspective_transform(points, dst)
    return get_perspective_transform(dst, points)


def check_is_concave(points: Sequence[Point]) -> bool:
    """
    Check whether a 4-point polygon, in the given order, is not convex.

    A zero cross product (flat or collapsed vertex) counts as concave.
    Point counts other than 4 are not judged and return False.
    """
    if len(points) != 4:
        return False

    signs = []
    for i in range(4):
        o = points[i]
        a = points[(i + 1) % 4]
        b = points[(i + 2) % 4]
        # Turn direction at vertex a
        cross = (a[0] - o[0]) * (b[1] - a[1]) - (a[1] - o[1]) * (b[0] - a[0])
        if cross == 0 or not math.isfinite(cross):
            return True
        signs.append(cross > 0)

    return not (all(signs) or not any(signs))


def translate(v: Point) -> np.ndarray:
    m = identity()
    m[0, 2] = v[0]
    m[1, 2] = v[1]
    return m


def transform_about_point(m: np.ndarray, center: Point) -> np.ndarray:
    """Conjugate m so it acts about center instead of the origin."""
    return translate(center) @ m @ translate(Point(-center[0], -center[1]))


def scale(sx: float, sy: Optional[float] = None, center: Optional[Point] = None) -> np.ndarray:
    if sy is None:
        sy = sx
    m = np.diag([float(sx), float(sy), 1.0])
    if center is None:
        return m
    return transform_about_point(m, center)


def rotate_matrix_deg(degrees: float, center: Point) -> np.ndarray:
    """
    Rotation about center. Positive degrees turn clockwise on screen,
    since screen y grows downward.
    """
    rad = math.radians(degrees)
    c = math.cos(rad)
    s = math.sin(rad)
    m = np.array([
        [c, -s, 0.0],
        [s, c, 0.0],
        [0.0, 0.0, 1.0],
    ])
    return transform_about_point(m, center)


def flip_horizontal(center: Point) -> np.ndarray:
    """Mirror left-right (negate x) about center."""
    return scale(-1.0, 1.0, center)


def flip_vertical(center: Point) -> np.ndarray:
    """Mirror top-bottom (negate y) about center."""
    return scale(1.0, -1.0, center)


def angle_deg(line: Line) -> float:
    """
    Signed angle of the line direction against the +x axis, in (-180, 180].

    Positive values are clockwise on screen (y grows downward), so a line
    pointing straight down is +90.
    """
    p0, p1 = line
    a = math.degrees(math.atan2(p1[1] - p0[1], p1[0] - p0[0]))
    if a <= -180.0:
        a += 360.0
    return a


def rotate_to_horizontal(line: Line) -> np.ndarray:
    """Rotate about the line's first endpoint so the line points along +x."""
    return rotate_matrix_deg(-angle_deg(line), line[0])


def flip_along(line: Line) -> np.ndarray:
    """Reflect across the infinite line through both endpoints."""
    level = rotate_to_horizontal(line)
    return inverse(level) @ flip_vertical(line[0]) @ level


def inverse(m: np.ndarray) -> np.ndarray:
    """
    Invert a 3x3 transform.

    A singular or non-finite input yields an all-NaN matrix so the failure
    propagates through later compositions instead of raising.
    """
    if not is_finite_matrix(m):
        return np.full((3, 3), np.nan)
    try:
        return np.linalg.inv(m)
    except np.linalg.LinAlgError:
        logger.debug("Singular transform, returning NaN matrix")
        return np.full((3, 3), np.nan)


def checked_inverse(m: np.ndarray) -> np.ndarray:
    """Invert m, raising SingularTransformError instead of returning NaN."""
    inv = inverse(m)
    if not is_finite_matrix(inv):
        raise SingularTransformError("Transform is singular")
    return inv


def is_flipped(m: np.ndarray) -> bool:
    """True when the transform's linear part mirrors (negative determinant)."""
    return float(np.linalg.det(m[:2, :2])) < 0


def to_matrix3d(m: np.ndarray) -> str:
    """
    CSS matrix3d() string for a 3x3 planar homography.

    The 3x3 is embedded in a 4x4 with z left untouched; CSS expects
    column-major order.
    """
    full = np.array([
        [m[0, 0], m[0, 1], 0.0, m[0, 2]],
        [m[1, 0], m[1, 1], 0.0, m[1, 2]],
        [0.0, 0.0, 1.0, 0.0],
        [m[2, 0], m[2, 1], 0.0, m[2, 2]],
    ])
    values = ",".join(f"{v:.10g}" for v in full.T.flatten())
    return f"matrix3d({values})"


def rect_corners(width: float, height: float) -> List[Point]:
    return [
        Point(0.0, 0.0),
        Point(float(width), 0.0),
        Point(float(width), float(height)),
        Point(0.0, float(height)),
    ]


def min_index(values: Sequence[float]) -> int:
    """Index of the smallest value; ties resolve to the first occurrence."""
    if len(values) == 0:
        raise ValueError("min_index() of an empty sequence")
    return int(np.argmin(np.asarray(values, dtype=np.float64)))


def sqr_dist(p1: Point, p2: Point) -> float:
    dx = p1[0] - p2[0]
    dy = p1[1] - p2[1]
    return dx * dx + dy * dy


def dist(p1: Point, p2: Point) -> float:
    return math.sqrt(sqr_dist(p1, p2))


def sqr_dist_to_line(line: Line, p: Point) -> float:
    """Squared distance from p to the finite segment (clamped to the endpoints)."""
    a, b = line
    length_sq = sqr_dist(a, b)
    if length_sq == 0:
        return sqr_dist(a, p)
    t = ((p[0] - a[0]) * (b[0] - a[0]) + (p[1] - a[1]) * (b[1] - a[1])) / length_sq
    t = max(0.0, min(1.0, t))
    closest = Point(a[0] + t * (b[0] - a[0]), a[1] + t * (b[1] - a[1]))
    return sqr_dist(closest, p)


def constrain_in_space(p: Point, anchor: Point, perspective: np.ndarray,
                       calibration_transform: np.ndarray) -> Point:
    """
    Snap a dragged screen point so the physical line from anchor is axis aligned.

    Args:
        p: Free-drag screen point
        anchor: Screen point the line starts at
        perspective: Screen -> physical transform
        calibration_transform: Physical -> screen transform

    Returns:
        Screen point whose physical offset from anchor lies on the dominant axis
    """
    pt = transform_point(p, perspective)
    a = transform_point(anchor, perspective)
    dx = pt.x - a.x
    dy = pt.y - a.y
    if abs(dx) > abs(dy):
        snapped = Point(pt.x, a.y)
    else:
        snapped = Point(a.x, pt.y)
    return transform_point(snapped, calibration_transform)


def subtract(p1: Point, p2: Point) -> Point:
    return Point(p1[0] - p2[0], p1[1] - p2[1])


def add(p1: Point, p2: Point) -> Point:
    return Point(p1[0] + p2[0], p1[1] + p2[1])


def point_to_dict(p: Point) -> dict:
    return {'x': float(p[0]), 'y': float(p[1])}


def matrix_to_list(m: Optional[np.ndarray]) -> Optional[List[List[float]]]:
    """JSON friendly matrix; NaN entries become None."""
    if m is None:
        return None
    return [[float(v) if math.isfinite(v) else None for v in row] for row in m]
