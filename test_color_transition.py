"""
Tests for display colour modes and the transition step function.
"""

import pytest

from pattern_projector.color_transition import (
    GREEN_COLOR,
    TRANSITION_DURATION,
    ColorTransition,
    advance,
    hex_to_bgr,
    initial_state,
    interpolate_color_ring,
    palette,
    start_transition,
)
from pattern_projector.display_settings import DisplaySettings


def test_color_modes():
    assert DisplaySettings().color_mode() == 0
    assert DisplaySettings(inverted=True, is_inverted_green=True).color_mode() == 1
    assert DisplaySettings(inverted=True).color_mode() == 2
    # Green only matters when inverted
    assert DisplaySettings(is_inverted_green=True).color_mode() == 0


def test_initial_state_is_at_rest():
    state = initial_state(2)
    assert state.progress == 2
    assert not state.is_running()
    assert advance(state, 1.0) == state


def test_transition_steps_forward():
    state = start_transition(initial_state(0), 1)
    assert state.is_running()
    state = advance(state, TRANSITION_DURATION / 2)
    assert state.progress == pytest.approx(0.5)
    state = advance(state, TRANSITION_DURATION)
    assert state.progress == pytest.approx(1.0)
    assert not state.is_running()


def test_transition_to_normal_wraps_forward():
    state = start_transition(initial_state(2), 0)
    assert state.end_progress == 3
    state = advance(state, TRANSITION_DURATION / 2)
    assert state.progress == pytest.approx(2.5)
    state = advance(state, 10.0)
    assert state.progress == pytest.approx(0.0)


def test_transition_never_runs_backwards():
    state = start_transition(initial_state(2), 1)
    assert state.end_progress == 4
    state = advance(state, TRANSITION_DURATION / 2)
    # Halfway from 2 to 4 is 3, which wraps to 0
    assert state.progress == pytest.approx(0.0)
    state = advance(state, TRANSITION_DURATION)
    assert state.progress == pytest.approx(1.0)


def test_negative_dt_does_not_rewind():
    state = start_transition(initial_state(0), 1)
    state = advance(state, TRANSITION_DURATION / 2)
    assert advance(state, -1.0).progress == pytest.approx(state.progress)


def test_component_restarts_from_current_progress():
    transition = ColorTransition(0)
    transition.set_color_mode(1)
    transition.advance(TRANSITION_DURATION / 2)
    assert transition.progress == pytest.approx(0.5)

    transition.set_color_mode(2)
    assert transition.state.start_progress == pytest.approx(0.5)
    transition.advance(TRANSITION_DURATION)
    assert transition.progress == pytest.approx(2.0)


def test_component_ignores_same_mode():
    transition = ColorTransition(1)
    transition.set_color_mode(1)
    assert not transition.state.is_running()
    assert transition.progress == 1


def test_interpolate_color_ring():
    ring = ['#ffffff', '#000000', '#000000']
    assert interpolate_color_ring(ring, 0) == '#ffffff'
    assert interpolate_color_ring(ring, 0.5) == '#808080'
    assert interpolate_color_ring(ring, 1) == '#000000'
    # Last segment blends back to the first colour
    assert interpolate_color_ring(ring, 2.5) == '#808080'
    assert interpolate_color_ring(ring, 3) == '#ffffff'


def test_palette():
    assert palette(0)['background'] == '#ffffff'
    assert palette(0)['grid_line'] == '#000000'
    assert palette(1)['grid_line'] == GREEN_COLOR
    assert palette(2)['background'] == '#000000'
    assert palette(2)['grid_line'] == '#ffffff'


def test_hex_to_bgr():
    assert hex_to_bgr('#32cd32') == (0x32, 0xcd, 0x32)
    assert hex_to_bgr('#f00') == (0, 0, 255)


def test_display_settings_round_trip():
    settings = DisplaySettings(inverted=True)
    settings.overlay.grid = True
    data = settings.to_dict()
    restored = DisplaySettings.from_dict(data)
    assert restored == settings

    partial = DisplaySettings.from_dict({'overlay': {'paper': True, 'bogus': 1}, 'unknown': 3})
    assert partial.overlay.paper
    assert not partial.inverted
    assert partial.is_four_corners

    updated = settings.updated({'overlay': {'border': True}, 'is_inverted_green': True})
    assert updated.overlay.grid and updated.overlay.border
    assert updated.color_mode() == 1
    assert not settings.overlay.border


def test_display_settings_ignore_non_bool_values():
    parsed = DisplaySettings.from_dict({'inverted': 'false', 'is_four_corners': 0,
                                        'overlay': {'grid': 'false', 'paper': True}})
    assert not parsed.inverted
    assert parsed.is_four_corners
    assert not parsed.overlay.grid
    assert parsed.overlay.paper

    settings = DisplaySettings(inverted=True)
    updated = settings.updated({'inverted': 'false', 'overlay': {'border': 1}})
    assert updated.inverted
    assert not updated.overlay.border
