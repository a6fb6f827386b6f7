"""
Tests for the measurement line state machine and readout.
"""

import numpy as np
import pytest

from pattern_projector.calibration import Calibrator
from pattern_projector.database import FileBasedDB
from pattern_projector.geometry import Point, identity, scale, translate
from pattern_projector.measurement import MeasurementController, measurement_readout
from pattern_projector.units import Unit


@pytest.fixture
def db(tmp_path):
    return FileBasedDB(str(tmp_path / "config"))


@pytest.fixture
def mc(db):
    controller = MeasurementController(db)
    controller.set_transforms(identity(), identity())
    return controller


def _draw(mc, start, end):
    mc.set_measuring(True)
    assert mc.handle_pointer_down(start)
    mc.handle_pointer_move(end)
    return mc.handle_pointer_up(end)


def _assert_line(line, expected):
    for p, q in zip(line, expected):
        assert p.x == pytest.approx(q[0], abs=1e-9)
        assert p.y == pytest.approx(q[1], abs=1e-9)


def test_draw_line(mc, db):
    assert _draw(mc, Point(0, 0), Point(100, 0))
    assert len(mc.lines) == 1
    _assert_line(mc.lines[0], [(0, 0), (100, 0)])
    assert mc.selected_line == 0
    assert not mc.measuring
    assert db.load_lines() == [[{'x': 0.0, 'y': 0.0}, {'x': 100.0, 'y': 0.0}]]


def test_pointer_down_outside_measuring_mode_is_ignored(mc):
    assert not mc.handle_pointer_down(Point(10, 10))
    assert not mc.is_drawing()


def test_lines_are_stored_in_content_space(mc):
    mc.set_transforms(scale(2), translate(Point(50, 0)))
    _draw(mc, Point(100, 0), Point(300, 0))
    # screen = 2 * (content + 50)
    _assert_line(mc.lines[0], [(0, 0), (100, 0)])

    # The line follows later changes of the local transform
    mc.set_transforms(scale(2), identity())
    overlay = mc.overlay()
    _assert_line(overlay.selected, [(0, 0), (200, 0)])


def test_axis_constrained_line(mc):
    mc.handle_key_down('Shift', shift=True)
    assert mc.axis_constrained
    _draw(mc, Point(0, 0), Point(80, 10))
    _assert_line(mc.lines[0], [(0, 0), (80, 0)])

    mc.handle_key_up('Shift', shift=False)
    assert not mc.axis_constrained


def test_select_toggle(mc):
    _draw(mc, Point(0, 0), Point(100, 0))
    mc.selected_line = None

    assert mc.handle_pointer_down(Point(50, 10))
    assert mc.selected_line == 0
    assert mc.handle_pointer_down(Point(50, 10))
    assert mc.selected_line is None


def test_click_on_empty_space_clears_selection(mc):
    _draw(mc, Point(0, 0), Point(100, 0))
    assert mc.selected_line == 0
    assert not mc.handle_pointer_down(Point(500, 500))
    assert mc.selected_line is None


def test_endpoint_drag(mc, db):
    _draw(mc, Point(0, 0), Point(100, 0))
    assert mc.handle_pointer_down(Point(100, 5))
    assert mc.selected_end == 1

    mc.handle_pointer_move(Point(150, 45))
    _assert_line(mc.lines[0], [(0, 0), (150, 40)])
    mc.handle_pointer_up(Point(150, 45))
    assert mc.selected_end is None
    assert db.load_lines()[0][1] == {'x': 150.0, 'y': 40.0}


def test_endpoint_drag_ends_when_buttons_released(mc):
    _draw(mc, Point(0, 0), Point(100, 0))
    mc.handle_pointer_down(Point(0, 3))
    assert mc.selected_end == 0
    mc.handle_pointer_move(Point(20, 20), buttons=0)
    assert mc.selected_end is None
    _assert_line(mc.lines[0], [(0, 0), (100, 0)])


def test_delete_reselects_neighbour(mc):
    for y in (0, 100, 200):
        _draw(mc, Point(0, y), Point(100, y))

    mc.selected_line = 0
    assert mc.handle_key_down('Backspace')
    assert len(mc.lines) == 2
    assert mc.selected_line == 1

    mc.selected_line = 1
    mc.handle_key_down('Delete')
    assert len(mc.lines) == 1
    assert mc.selected_line == 0

    mc.delete_line()
    assert mc.lines == []
    assert mc.selected_line is None


def test_delete_without_selection(mc):
    _draw(mc, Point(0, 0), Point(100, 0))
    mc.selected_line = None
    assert not mc.handle_key_down('Backspace')
    assert len(mc.lines) == 1
    assert not mc.delete_line(5)


def test_singular_transform_drops_line(mc):
    mc.set_transforms(np.zeros((3, 3)), identity())
    assert not _draw(mc, Point(0, 0), Point(10, 0))
    assert mc.lines == []
    assert mc.overlay().lines == []


def test_clear(mc, db):
    _draw(mc, Point(0, 0), Point(100, 0))
    mc.clear()
    assert mc.lines == []
    assert mc.selected_line is None
    assert db.load_lines() == []


def test_lines_persist(db):
    first = MeasurementController(db)
    _draw(first, Point(10, 20), Point(30, 40))

    second = MeasurementController(db)
    assert second.load()
    _assert_line(second.lines[0], [(10, 20), (30, 40)])
    assert second.selected_line is None


def test_malformed_stored_lines_are_ignored(db):
    db.save_lines([[{'x': 1}]])
    mc = MeasurementController(db)
    assert not mc.load()
    assert mc.lines == []


def test_readout_inches_and_cm():
    line = (Point(0, 0), Point(96, 0))
    readout = measurement_readout(line, Unit.IN)
    assert readout.length == pytest.approx(1.0)
    assert readout.angle == 0
    assert readout.label == '1.00" 0°'

    readout = measurement_readout((Point(0, 0), Point(96 / 2.54, 0)), Unit.CM)
    assert readout.length == pytest.approx(1.0)
    assert readout.label == '1.00cm 0°'


def test_readout_angle_is_counter_clockwise():
    down = measurement_readout((Point(0, 0), Point(0, 96)), Unit.IN)
    assert down.angle == pytest.approx(90)
    assert down.protractor_degrees == '270'

    up = measurement_readout((Point(0, 0), Point(0, -96)), Unit.IN)
    assert up.protractor_degrees == '90'

    almost_flat = measurement_readout((Point(0, 0), Point(1000, -0.1)), Unit.IN)
    assert almost_flat.protractor_degrees == '0'


def test_current_readout(mc):
    assert mc.current_readout() is None
    mc.set_measuring(True)
    mc.handle_pointer_down(Point(0, 0))
    mc.handle_pointer_move(Point(192, 0))
    assert mc.current_readout().length == pytest.approx(2.0)
    overlay = mc.overlay()
    assert overlay.in_progress is not None
    assert overlay.readout_anchor == Point(0, 0)
    assert overlay.readout_text.startswith('2.00"')


def test_degenerate_calibration_suppresses_measuring(db):
    calibrator = Calibrator(width=10, height=5,
                            points=[Point(0, 0), Point(50, 0), Point(100, 0), Point(0, 50)])
    assert calibrator.is_degenerate()
    mc = MeasurementController(db)
    mc.set_transforms(calibrator.content_calibration_transform, identity())
    assert not mc.has_calibration()

    mc.set_measuring(True)
    assert not mc.handle_pointer_down(Point(10, 10))
    mc.handle_pointer_move(Point(200, 10))
    assert not mc.handle_pointer_up(Point(200, 10))
    assert mc.lines == []
    assert db.load_lines() is None


def test_lost_calibration_discards_line_in_progress(mc, db):
    mc.set_measuring(True)
    assert mc.handle_pointer_down(Point(10, 10))
    mc.set_transforms(None)
    assert not mc.handle_pointer_up(Point(200, 10))
    assert not mc.is_drawing()
    assert mc.lines == []
    assert db.load_lines() is None
