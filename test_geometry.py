"""
Tests for the planar geometry helpers.
"""

import math

import numpy as np
import pytest

from pattern_projector.geometry import (
    DegenerateCalibrationError,
    GeometryError,
    Point,
    angle_deg,
    check_is_concave,
    checked_inverse,
    constrain_in_space,
    flip_horizontal,
    flip_vertical,
    get_perspective_transform,
    get_perspective_transform_from_points,
    identity,
    inverse,
    is_finite_point,
    is_flipped,
    matrix_to_list,
    min_index,
    rotate_matrix_deg,
    scale,
    sqr_dist_to_line,
    SingularTransformError,
    to_matrix3d,
    to_point,
    transform_point,
    transform_points,
)


SKEWED_QUAD = [Point(12, 25), Point(310, 40), Point(290, 260), Point(30, 235)]
RECT = [Point(0, 0), Point(10, 0), Point(10, 5), Point(0, 5)]


def test_identity_transform_leaves_points_unchanged():
    for p in [Point(0, 0), Point(-3.5, 7.25), Point(1e6, -1e-3)]:
        assert transform_point(p, identity()) == p


def test_homography_round_trip():
    forward = get_perspective_transform(SKEWED_QUAD, RECT)
    backward = get_perspective_transform(RECT, SKEWED_QUAD)
    for src, dst in zip(SKEWED_QUAD, RECT):
        mapped = transform_point(src, forward)
        assert mapped.x == pytest.approx(dst.x, abs=1e-6)
        assert mapped.y == pytest.approx(dst.y, abs=1e-6)
        back = transform_point(mapped, backward)
        assert back.x == pytest.approx(src.x, abs=1e-6)
        assert back.y == pytest.approx(src.y, abs=1e-6)


def test_screen_center_maps_to_physical_center():
    screen = [Point(0, 0), Point(100, 0), Point(100, 50), Point(0, 50)]
    perspective = get_perspective_transform_from_points(screen, 10, 5, inverse=True)
    center = transform_point(Point(50, 25), perspective)
    assert center.x == pytest.approx(5.0)
    assert center.y == pytest.approx(2.5)


def test_collinear_corners_are_degenerate():
    collinear = [Point(0, 0), Point(50, 0), Point(100, 0), Point(0, 50)]
    with pytest.raises(DegenerateCalibrationError):
        get_perspective_transform(collinear, RECT)
    # Geometry errors are value errors for callers that do not care
    assert issubclass(DegenerateCalibrationError, GeometryError)
    assert issubclass(GeometryError, ValueError)


def test_wrong_point_count_is_degenerate():
    with pytest.raises(DegenerateCalibrationError):
        get_perspective_transform(SKEWED_QUAD[:3], RECT[:3])


def test_convex_quads_are_not_concave():
    assert not check_is_concave(RECT)
    assert not check_is_concave(SKEWED_QUAD)
    # Counter-clockwise ordering is still convex
    assert not check_is_concave(list(reversed(RECT)))


def test_reflex_vertex_is_concave():
    dart = [Point(0, 0), Point(100, 0), Point(20, 20), Point(0, 100)]
    assert check_is_concave(dart)


def test_self_intersecting_order_is_concave():
    bowtie = [Point(0, 0), Point(100, 0), Point(0, 100), Point(100, 100)]
    assert check_is_concave(bowtie)


def test_zero_cross_product_counts_as_concave():
    flat = [Point(0, 0), Point(50, 0), Point(100, 0), Point(50, 50)]
    assert check_is_concave(flat)


def test_concave_check_needs_four_points():
    assert not check_is_concave(RECT[:3])
    assert not check_is_concave([])


def test_rotate_four_times_is_identity():
    for center in [Point(0, 0), Point(3, 7), Point(-120.5, 44)]:
        m = identity()
        for _ in range(4):
            m = rotate_matrix_deg(90, center) @ m
        assert np.allclose(m, identity(), atol=1e-9)


def test_rotate_keeps_center_fixed():
    center = Point(5, 5)
    p = transform_point(center, rotate_matrix_deg(37, center))
    assert p.x == pytest.approx(5)
    assert p.y == pytest.approx(5)


def test_positive_rotation_is_clockwise_on_screen():
    p = transform_point(Point(1, 0), rotate_matrix_deg(90, Point(0, 0)))
    assert p.x == pytest.approx(0, abs=1e-12)
    assert p.y == pytest.approx(1)


def test_flips_are_involutions():
    center = Point(12, -4)
    assert np.allclose(flip_horizontal(center) @ flip_horizontal(center), identity())
    assert np.allclose(flip_vertical(center) @ flip_vertical(center), identity())
    assert is_flipped(flip_horizontal(center))
    assert not is_flipped(rotate_matrix_deg(90, center))


def test_sqr_dist_to_line_is_clamped_to_segment():
    line = (Point(0, 0), Point(10, 0))
    assert sqr_dist_to_line(line, Point(4, 0)) == 0
    assert sqr_dist_to_line(line, Point(5, 3)) == pytest.approx(9)
    # Beyond the end: distance to the endpoint, not to the infinite line
    assert sqr_dist_to_line(line, Point(13, 4)) == pytest.approx(25)
    assert sqr_dist_to_line(line, Point(-3, 0)) == pytest.approx(9)


def test_sqr_dist_to_zero_length_line():
    line = (Point(2, 2), Point(2, 2))
    assert sqr_dist_to_line(line, Point(5, 6)) == pytest.approx(25)


def test_min_index():
    assert min_index([5, 1, 3]) == 1
    assert min_index([2, 1, 1]) == 1
    with pytest.raises(ValueError):
        min_index([])


def test_angle_deg():
    assert angle_deg((Point(0, 0), Point(10, 0))) == 0
    assert angle_deg((Point(0, 0), Point(0, 10))) == pytest.approx(90)
    assert angle_deg((Point(0, 0), Point(0, -10))) == pytest.approx(-90)
    assert angle_deg((Point(0, 0), Point(-10, 0))) == pytest.approx(180)


def test_singular_inverse_propagates_nan():
    singular = np.zeros((3, 3))
    inv = inverse(singular)
    assert np.all(np.isnan(inv))
    assert not is_finite_point(transform_point(Point(1, 1), inv))
    with pytest.raises(SingularTransformError):
        checked_inverse(singular)


def test_inverse_of_homography():
    m = get_perspective_transform(RECT, SKEWED_QUAD)
    assert np.allclose(inverse(m) @ m, identity(), atol=1e-9)


def test_axis_constrain_in_physical_space():
    calibration = scale(10)  # physical -> screen
    perspective = inverse(calibration)
    anchor = transform_point(Point(0, 0), calibration)
    raw = transform_point(Point(8, 1), calibration)
    constrained = constrain_in_space(raw, anchor, perspective, calibration)
    physical = transform_point(constrained, perspective)
    assert physical.x == pytest.approx(8)
    assert physical.y == pytest.approx(0)


def test_axis_constrain_picks_dominant_axis():
    p = constrain_in_space(Point(1, 8), Point(0, 0), identity(), identity())
    assert p == Point(0, 8)


def test_transform_points_matches_transform_point():
    m = get_perspective_transform(RECT, SKEWED_QUAD)
    pts = [Point(1, 1), Point(7.5, 2.5), Point(0, 5)]
    for a, b in zip(transform_points(pts, m), pts):
        single = transform_point(b, m)
        assert a.x == pytest.approx(single.x)
        assert a.y == pytest.approx(single.y)
    assert transform_points([], m) == []


def test_to_point_accepts_dicts_and_sequences():
    assert to_point({'x': 1, 'y': 2}) == Point(1.0, 2.0)
    assert to_point([3, 4]) == Point(3.0, 4.0)
    with pytest.raises(KeyError):
        to_point({'x': 1})


def test_matrix_serialisation():
    assert to_matrix3d(identity()) == "matrix3d(1,0,0,0,0,1,0,0,0,0,1,0,0,0,0,1)"
    nan_list = matrix_to_list(np.full((3, 3), np.nan))
    assert nan_list[0][0] is None
    assert matrix_to_list(None) is None
    assert not math.isnan(matrix_to_list(identity())[2][2])
