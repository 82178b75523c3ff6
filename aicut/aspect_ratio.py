"""Aspect-ratio tables for image generation and export canvases."""

from __future__ import annotations

from aicut.models import DEFAULT_ASPECT_RATIO

# Image generation sizes per aspect ratio.
_RESOLUTIONS = {
    "16:9": "2560x1440",
    "9:16": "1440x2560",
    "1:1": "2048x2048",
    "4:3": "2304x1728",
    "3:4": "1728x2304",
}

DEFAULT_RESOLUTION = "2560x1440"

# Character portraits are always generated upright.
PORTRAIT_RESOLUTION = "1728x2304"

EXPORT_SHORT_SIDE = 720


def resolution_for(ratio: str | None, default: str = DEFAULT_RESOLUTION) -> str:
    """Image size string (``WxH``) for an aspect ratio; unknown ratios get ``default``."""
    if not ratio:
        return default
    return _RESOLUTIONS.get(ratio, default)


def _even(value: float) -> int:
    n = int(round(value))
    return n if n % 2 == 0 else n + 1


def canvas_size(ratio: str | None, short_side: int = EXPORT_SHORT_SIDE) -> tuple[int, int]:
    """Export canvas ``(width, height)`` with the shorter side fixed and both sides even.

    >>> canvas_size("16:9")
    (1280, 720)
    >>> canvas_size("9:16")
    (720, 1280)
    """
    w_str, h_str = (ratio if ratio in _RESOLUTIONS else DEFAULT_ASPECT_RATIO).split(":")
    w, h = int(w_str), int(h_str)
    if w >= h:
        return _even(short_side * w / h), _even(short_side)
    return _even(short_side), _even(short_side * h / w)
