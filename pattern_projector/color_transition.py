"""
Colour transition between display colour modes.

The transition is a pure step function over an immutable state; the owner
(server tick, test, ...) decides when to advance it.
"""

import math
from typing import List, NamedTuple, Sequence, Tuple


TRANSITION_DURATION = 0.7  # seconds
MIN_COLOR_MODE = 0
MAX_COLOR_MODE = 2

LIGHT_COLOR = '#ffffff'
DARK_COLOR = '#000000'
GREEN_COLOR = '#32cd32'


class ColorTransitionState(NamedTuple):
    """
    progress ranges over [0, MAX_COLOR_MODE + 1); integer values are the
    resting colour modes.
    """
    progress: float = 0.0
    start_progress: float = 0.0
    end_progress: float = 0.0
    elapsed: float = 0.0
    duration: float = TRANSITION_DURATION

    def is_running(self) -> bool:
        return self.elapsed < self.duration and self.start_progress != self.end_progress


def initial_state(color_mode: int) -> ColorTransitionState:
    p = float(color_mode)
    return ColorTransitionState(progress=p, start_progress=p, end_progress=p,
                                elapsed=TRANSITION_DURATION)


def start_transition(state: ColorTransitionState, color_mode: int,
                     duration: float = TRANSITION_DURATION) -> ColorTransitionState:
    """
    Begin moving toward color_mode from the current progress.

    Progress only moves forward; returning to mode 0 travels to
    MAX_COLOR_MODE + 1 and wraps.
    """
    start = state.progress
    end = float(color_mode)
    if color_mode == MIN_COLOR_MODE:
        end = float(MAX_COLOR_MODE + 1)
    if end < start:
        end += MAX_COLOR_MODE + 1
    return ColorTransitionState(progress=start, start_progress=start, end_progress=end,
                                elapsed=0.0, duration=duration)


def advance(state: ColorTransitionState, dt: float) -> ColorTransitionState:
    """Step the transition by dt seconds."""
    if not state.is_running():
        return state
    elapsed = state.elapsed + max(0.0, dt)
    fraction = min(elapsed / state.duration, 1.0) if state.duration > 0 else 1.0
    progress = state.start_progress + fraction * (state.end_progress - state.start_progress)
    progress %= MAX_COLOR_MODE + 1
    return state._replace(progress=progress, elapsed=elapsed)


class ColorTransition:
    """Owns the transition state between ticks."""

    def __init__(self, color_mode: int = 0, duration: float = TRANSITION_DURATION):
        self.duration = duration
        self.color_mode = color_mode
        self.state = initial_state(color_mode)

    @property
    def progress(self) -> float:
        return self.state.progress

    def set_color_mode(self, color_mode: int) -> None:
        """Retarget; an in-flight transition is replaced from its current progress."""
        if color_mode == self.color_mode:
            return
        self.color_mode = color_mode
        self.state = start_transition(self.state, color_mode, self.duration)

    def advance(self, dt: float) -> float:
        self.state = advance(self.state, dt)
        return self.state.progress


def hex_to_rgb(color: str) -> Tuple[int, int, int]:
    c = color.lstrip('#')
    if len(c) == 3:
        c = ''.join(ch * 2 for ch in c)
    return int(c[0:2], 16), int(c[2:4], 16), int(c[4:6], 16)


def rgb_to_hex(rgb: Sequence[float]) -> str:
    r, g, b = (max(0, min(255, int(round(v)))) for v in rgb)
    return f'#{r:02x}{g:02x}{b:02x}'


def hex_to_bgr(color: str) -> Tuple[int, int, int]:
    """OpenCV colour tuple for a hex string."""
    r, g, b = hex_to_rgb(color)
    return b, g, r


def interpolate_color_ring(colors: List[str], progress: float) -> str:
    """
    Blend around a ring of colours.

    progress in [0, len(colors)); integer values give colors[i] exactly and
    the segment after the last colour blends back to the first.
    """
    n = len(colors)
    progress %= n
    i = int(math.floor(progress))
    t = progress - i
    a = hex_to_rgb(colors[i])
    b = hex_to_rgb(colors[(i + 1) % n])
    return rgb_to_hex([a[k] + (b[k] - a[k]) * t for k in range(3)])


def palette(progress: float) -> dict:
    """Named colours for a transition progress value."""
    return {
        'background': interpolate_color_ring([LIGHT_COLOR, DARK_COLOR, DARK_COLOR], progress),
        'fill': interpolate_color_ring([LIGHT_COLOR, DARK_COLOR, DARK_COLOR], progress),
        'grid_line': interpolate_color_ring([DARK_COLOR, GREEN_COLOR, LIGHT_COLOR], progress),
        'projection_grid_line': interpolate_color_ring([DARK_COLOR, GREEN_COLOR, LIGHT_COLOR], progress),
        'light': LIGHT_COLOR,
        'dark': DARK_COLOR,
    }
