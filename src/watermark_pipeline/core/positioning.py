"""Overlay placement on the 3x3 anchor grid or at a custom percent coordinate."""

import math
from typing import Optional, Tuple, Union

from .models import Anchor

Size = Tuple[int, int]
Point = Tuple[int, int]

_HORIZONTAL = {"left": "start", "center": "middle", "right": "end"}
_VERTICAL = {"top": "start", "middle": "middle", "bottom": "end", "center": "middle"}


def _split_anchor(anchor: Anchor) -> Tuple[str, str]:
    if anchor is Anchor.CENTER:
        return "middle", "middle"
    vertical, horizontal = anchor.value.split("-")
    return _VERTICAL[vertical], _HORIZONTAL[horizontal]


def _axis_offset(placement: str, canvas: int, overlay: int, margin: int) -> int:
    if placement == "start":
        return margin
    if placement == "end":
        return canvas - overlay - margin
    return (canvas - overlay) // 2


def compute_position(
    anchor: Union[Anchor, str],
    canvas_size: Size,
    overlay_size: Size,
    margin: int = 0,
    custom: Optional[Tuple[float, float]] = None,
) -> Point:
    """
    Return the top-left pixel offset of an overlay.

    Named anchors apply ``margin`` inward from the edges they touch; a centered
    axis ignores it. A ``custom`` (x%, y%) pair places the overlay center at
    that fraction of the canvas, clamped to the canvas, and takes precedence
    over the anchor.
    """
    canvas_w, canvas_h = canvas_size
    overlay_w, overlay_h = overlay_size

    if custom is not None:
        px = min(max(float(custom[0]), 0.0), 100.0)
        py = min(max(float(custom[1]), 0.0), 100.0)
        center_x = canvas_w * px / 100.0
        center_y = canvas_h * py / 100.0
        return math.floor(center_x - overlay_w / 2), math.floor(center_y - overlay_h / 2)

    vertical, horizontal = _split_anchor(Anchor(anchor))
    x = _axis_offset(horizontal, canvas_w, overlay_w, margin)
    y = _axis_offset(vertical, canvas_h, overlay_h, margin)
    return x, y
