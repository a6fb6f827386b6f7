"""
Tests for the calibration canvas interaction controller.
All times are synthetic seconds.
"""

import pytest

from pattern_projector.calibration import Calibrator
from pattern_projector.calibration_controller import (
    ARROW_KEY_STEP,
    FINE_ARROW_KEY_STEP,
    CalibrationCanvasController,
    nudge_points,
)
from pattern_projector.database import FileBasedDB
from pattern_projector.display_settings import DisplaySettings
from pattern_projector.geometry import Point


CORNERS = [Point(100, 100), Point(400, 100), Point(400, 300), Point(100, 300)]


@pytest.fixture
def db(tmp_path):
    return FileBasedDB(str(tmp_path / "config"))


@pytest.fixture
def controller(db):
    calibrator = Calibrator(width=24, height=18, points=CORNERS)
    return CalibrationCanvasController(calibrator, db, DisplaySettings())


def test_placement_appends_and_persists(db):
    calibrator = Calibrator()
    controller = CalibrationCanvasController(calibrator, db)
    placed = [Point(0, 0), Point(100, 0), Point(100, 50), Point(0, 50)]
    for i, p in enumerate(placed):
        controller.handle_pointer_down(p, now=float(i))
        controller.handle_pointer_up(now=float(i))
        assert len(calibrator.points) == i + 1

    assert calibrator.points == placed
    assert calibrator.is_calibrated()
    stored = db.load_points()
    assert [Point(d['x'], d['y']) for d in stored] == placed


def test_drag_corner_and_commit(controller, db):
    controller.handle_pointer_down(Point(105, 98), now=0.0)
    assert controller.active_corner == 0
    controller.handle_pointer_move(Point(125, 118), now=0.1)
    assert controller.points[0] == Point(120, 120)
    # Not committed until release
    assert controller.calibrator.points[0] == Point(100, 100)
    assert db.load_points() is None

    assert controller.handle_pointer_up(now=0.2)
    assert controller.calibrator.points[0] == Point(120, 120)
    assert db.load_points()[0] == {'x': 120.0, 'y': 120.0}


def test_release_without_drag_is_noop(controller, db):
    assert not controller.handle_pointer_up(now=1.0)
    assert db.load_points() is None
    assert controller.calibrator.points == CORNERS


def test_precision_drag_divides_movement(controller):
    controller.handle_pointer_down(Point(100, 100), now=0.0)
    assert controller.tick(now=0.6)
    controller.handle_pointer_move(Point(110, 100), now=0.65)
    corner = controller.points[0]
    assert corner.x == pytest.approx(102)
    assert corner.y == pytest.approx(100)


def test_precision_engages_on_move_without_jump(controller):
    controller.handle_pointer_down(Point(100, 100), now=0.0)
    controller.handle_pointer_move(Point(105, 100), now=0.2)
    assert controller.points[0] == Point(105, 100)
    assert not controller.precision_active

    controller.handle_pointer_move(Point(110, 100), now=0.7)
    assert controller.precision_active
    # Re-anchored at (105, 100), so only 5 / 5 px of the latest motion applies
    assert controller.points[0].x == pytest.approx(106)


def test_precision_cancelled_by_early_movement(controller):
    controller.handle_pointer_down(Point(100, 100), now=0.0)
    controller.handle_pointer_move(Point(130, 100), now=0.1)
    assert controller.precision_cancelled
    assert controller.points[0] == Point(130, 100)

    # Holding still afterwards does not engage precision for this gesture
    assert not controller.tick(now=2.0)
    controller.handle_pointer_move(Point(140, 100), now=2.1)
    assert controller.points[0] == Point(140, 100)


def test_precision_resets_for_next_gesture(controller):
    controller.handle_pointer_down(Point(100, 100), now=0.0)
    controller.handle_pointer_move(Point(130, 100), now=0.1)
    controller.handle_pointer_up(now=0.2)

    controller.handle_pointer_down(Point(130, 100), now=1.0)
    assert not controller.precision_cancelled
    assert controller.tick(now=1.6)


def test_touch_move_is_damped(controller):
    controller.handle_pointer_down(Point(100, 100), now=0.0)
    controller.handle_touch_move(Point(200, 100), now=0.1)
    assert controller.points[0].x == pytest.approx(105)


def test_pan_moves_all_corners(controller, db):
    controller.handle_pointer_down(Point(1000, 1000), now=0.0)
    assert controller.active_corner is None
    assert controller.is_panning()
    controller.handle_pointer_move(Point(1010, 1020), now=0.1)
    assert controller.points == [Point(p.x + 10, p.y + 20) for p in CORNERS]
    assert controller.handle_pointer_up(now=0.2)
    assert controller.calibrator.points[2] == Point(410, 320)
    assert db.load_points() is not None


def test_single_corner_mode_drags_whole_quad(controller):
    controller.display_settings.is_four_corners = False
    controller.handle_pointer_down(Point(100, 100), now=0.0)
    controller.handle_pointer_move(Point(120, 100), now=0.1)
    assert controller.points == [Point(p.x + 20, p.y) for p in CORNERS]


def test_hover_hint(controller):
    assert controller.handle_hover(Point(390, 310)) == 2
    assert controller.hover_corner == 2
    assert controller.handle_hover(Point(1000, 1000)) is None
    # Moving without a gesture only updates the hover hint
    controller.handle_pointer_move(Point(95, 290), now=0.0)
    assert controller.hover_corner == 3
    assert controller.points == CORNERS


def test_tab_cycles_corners(controller):
    seen = []
    for _ in range(5):
        assert controller.handle_key_down('Tab')
        seen.append(controller.active_corner)
    assert seen == [0, 1, 2, 3, 0]


def test_shift_tab_toggles_four_corner_mode(controller, db):
    assert controller.display_settings.is_four_corners
    controller.handle_key_down('Tab', shift=True)
    assert not controller.display_settings.is_four_corners
    assert db.load_display_settings()['is_four_corners'] is False
    controller.handle_key_down('Tab', shift=True)
    assert controller.display_settings.is_four_corners


def test_escape_clears_selection(controller):
    controller.handle_key_down('Tab')
    assert controller.active_corner == 0
    controller.handle_key_down('Escape')
    assert controller.active_corner is None


def test_arrow_keys_nudge_active_corner(controller, db):
    assert not controller.handle_key_down('ArrowRight')

    controller.handle_key_down('Tab')
    controller.handle_key_down('ArrowRight')
    assert controller.calibrator.points[0] == Point(100 + ARROW_KEY_STEP, 100)
    controller.handle_key_down('ArrowUp', fine=True)
    assert controller.calibrator.points[0] == Point(100 + ARROW_KEY_STEP, 100 - FINE_ARROW_KEY_STEP)
    assert controller.calibrator.points[1] == Point(400, 100)
    assert db.load_points()[0]['x'] == 100 + ARROW_KEY_STEP


def test_arrow_keys_move_all_corners_in_single_corner_mode(controller):
    controller.display_settings.is_four_corners = False
    controller.handle_key_down('Tab')
    controller.handle_key_down('ArrowDown')
    assert controller.calibrator.points == [Point(p.x, p.y + ARROW_KEY_STEP) for p in CORNERS]


def test_nudge_points_is_pure():
    points = list(CORNERS)
    moved = nudge_points(points, 1, 'ArrowLeft')
    assert moved[1] == Point(400 - ARROW_KEY_STEP, 100)
    assert points == CORNERS
    with pytest.raises(ValueError):
        nudge_points(points, 0, 'PageUp')


def test_unknown_key_not_consumed(controller):
    assert not controller.handle_key_down('a')
