"""Easing and progress utilities for scene transitions.

Used by both the frame sequencer (Pillow blending) and the filter graph
builder (sampled alpha ramps), so the two compositing paths agree on
the shape of every transition.

Usage:
    from framecast.utils.interpolation import get_easing_function, transition_progress

    p = transition_progress(frame=50, start_frame=45, duration_frames=15)
    eased = get_easing_function("ease_in_out")(p)
"""

import math
from typing import Callable

EasingFunction = Callable[[float], float]


# =============================================================================
# Easing Functions
# =============================================================================


def linear(t: float) -> float:
    """Linear easing (no easing)."""
    return t


def ease_in(t: float) -> float:
    """Ease in (cubic)."""
    return t * t * t


def ease_out(t: float) -> float:
    """Ease out (cubic)."""
    return 1 - (1 - t) ** 3


def ease_in_out(t: float) -> float:
    """Ease in-out (cubic)."""
    if t < 0.5:
        return 4 * t * t * t
    else:
        return 1 - (-2 * t + 2) ** 3 / 2


def ease_in_quad(t: float) -> float:
    return t * t


def ease_out_quad(t: float) -> float:
    return 1 - (1 - t) * (1 - t)


def ease_in_out_quad(t: float) -> float:
    if t < 0.5:
        return 2 * t * t
    else:
        return 1 - (-2 * t + 2) ** 2 / 2


def ease_in_sine(t: float) -> float:
    return 1 - math.cos((t * math.pi) / 2)


def ease_out_sine(t: float) -> float:
    return math.sin((t * math.pi) / 2)


def ease_in_out_sine(t: float) -> float:
    return -(math.cos(math.pi * t) - 1) / 2


def ease_in_expo(t: float) -> float:
    return 0 if t == 0 else 2 ** (10 * t - 10)


def ease_out_expo(t: float) -> float:
    return 1 if t == 1 else 1 - 2 ** (-10 * t)


def bezier(x1: float, y1: float, x2: float, y2: float) -> EasingFunction:
    """Create a cubic bezier easing function.

    Args:
        x1, y1: First control point
        x2, y2: Second control point

    Returns:
        Easing function (t -> value)
    """
    def _bezier(t: float) -> float:
        # Newton-Raphson to find the curve parameter for x
        epsilon = 1e-6
        u = t

        for _ in range(8):
            x = 3 * (1 - u) ** 2 * u * x1 + 3 * (1 - u) * u ** 2 * x2 + u ** 3
            if abs(x - t) < epsilon:
                break
            dx = (
                3 * (1 - u) ** 2 * x1
                + 6 * (1 - u) * u * (x2 - x1)
                + 3 * u ** 2 * (1 - x2)
            )
            if abs(dx) < epsilon:
                break
            u -= (x - t) / dx

        return 3 * (1 - u) ** 2 * u * y1 + 3 * (1 - u) * u ** 2 * y2 + u ** 3

    return _bezier


# Easing name -> function lookup for string-based configuration
EASING_FUNCTIONS: dict[str, EasingFunction] = {
    "linear": linear,
    "ease_in": ease_in,
    "ease_out": ease_out,
    "ease_in_out": ease_in_out,
    "ease_in_quad": ease_in_quad,
    "ease_out_quad": ease_out_quad,
    "ease_in_out_quad": ease_in_out_quad,
    "ease_in_sine": ease_in_sine,
    "ease_out_sine": ease_out_sine,
    "ease_in_out_sine": ease_in_out_sine,
    "ease_in_expo": ease_in_expo,
    "ease_out_expo": ease_out_expo,
    # CSS named curves
    "css_ease": bezier(0.25, 0.1, 0.25, 1.0),
    "css_ease_in": bezier(0.42, 0, 1.0, 1.0),
    "css_ease_out": bezier(0, 0, 0.58, 1.0),
    "css_ease_in_out": bezier(0.42, 0, 0.58, 1.0),
}


def get_easing_function(name: str) -> EasingFunction:
    """Get an easing function by name.

    Raises:
        ValueError: If the easing name is not recognized
    """
    fn = EASING_FUNCTIONS.get(name)
    if fn is None:
        raise ValueError(
            f"Unknown easing function: {name}. "
            f"Available: {', '.join(EASING_FUNCTIONS.keys())}"
        )
    return fn


# =============================================================================
# Transition Progress
# =============================================================================


def transition_progress(frame: float, start_frame: float, duration_frames: float) -> float:
    """Local progress of a transition window, clamped to [0, 1]."""
    if duration_frames <= 0:
        return 1.0
    return min(1.0, max(0.0, (frame - start_frame) / duration_frames))


def eased_progress(
    frame: float,
    start_frame: float,
    duration_frames: float,
    easing: str = "linear",
) -> float:
    """Transition progress with the named easing applied, clamped to [0, 1]."""
    p = transition_progress(frame, start_frame, duration_frames)
    return min(1.0, max(0.0, get_easing_function(easing)(p)))


def sample_easing(easing: str, segments: int = 8) -> list[tuple[float, float]]:
    """Sample an easing curve into piecewise-linear breakpoints.

    Returns ``segments + 1`` points ``(x, y)`` from ``(0, f(0))`` to ``(1, f(1))``
    with y clamped to [0, 1].
    """
    if segments < 1:
        raise ValueError("segments must be at least 1")
    fn = get_easing_function(easing)
    points: list[tuple[float, float]] = []
    for i in range(segments + 1):
        x = i / segments
        points.append((x, min(1.0, max(0.0, fn(x)))))
    return points
