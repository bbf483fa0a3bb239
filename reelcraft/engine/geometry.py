"""
Pure layout and timing math for segments: the contain box, rotation handling
and the per-frame motion paths used for stills.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Tuple

from .schemas import FPS, HEIGHT, WIDTH

ZOOM_DELTA = 0.20
PAN_SCALE = 1.08
FADE_IN_SEC = 0.25
FADE_OUT_MIN_SEC = 0.25
FADE_OUT_MAX_SEC = 0.6
FADE_OUT_RATIO = 0.15


def even_floor(n: float) -> int:
    return max(2, int(math.floor(n / 2.0)) * 2)


def oriented_size(width: int, height: int, rotation: int) -> Tuple[int, int]:
    """Swap width/height for sources that are displayed rotated by 90/270."""
    if rotation % 360 in (90, 270):
        return height, width
    return width, height


def fit_contain(src_w: int, src_h: int, canvas_w: int = WIDTH, canvas_h: int = HEIGHT) -> Tuple[int, int]:
    """
    Largest box with the source aspect ratio that fits inside the canvas.
    Both sides are rounded down to even numbers for 4:2:0 chroma.
    """
    src_w = max(1, int(src_w))
    src_h = max(1, int(src_h))
    ar_src = src_w / src_h
    ar_out = canvas_w / canvas_h
    if ar_src >= ar_out:
        fit_w = even_floor(canvas_w)
        fit_h = even_floor(canvas_w / ar_src)
    else:
        fit_h = even_floor(canvas_h)
        fit_w = even_floor(canvas_h * ar_src)
    return min(fit_w, canvas_w), min(fit_h, canvas_h)


def frame_count(duration_sec: float, fps: int = FPS) -> int:
    return max(2, int(round(duration_sec * fps)))


def fade_out_duration(duration_sec: float) -> float:
    return max(FADE_OUT_MIN_SEC, min(FADE_OUT_MAX_SEC, duration_sec * FADE_OUT_RATIO))


@dataclass(frozen=True)
class MotionPath:
    """
    Per-frame transform for the foreground of a still.

    The crop window (the contain box) never changes size; only the scale of
    the source under it and the crop origin move from frame to frame.
    """

    motion: str
    frames: int
    box_w: int
    box_h: int

    @property
    def last_index(self) -> int:
        return self.frames - 1

    @property
    def animated(self) -> bool:
        return self.motion != "cover"

    def scale_at(self, n: int) -> float:
        progress = self._progress(n)
        if self.motion == "zoom_in":
            return 1.0 + ZOOM_DELTA * progress
        if self.motion == "zoom_out":
            return 1.0 + ZOOM_DELTA * (1.0 - progress)
        if self.motion in ("pan_left", "pan_right"):
            return PAN_SCALE
        return 1.0

    def crop_at(self, n: int) -> Tuple[int, int, int, int]:
        """(x, y, w, h) of the crop window on the scaled frame `n`."""
        scale = self.scale_at(n)
        scaled_w = self.box_w * scale
        scaled_h = self.box_h * scale
        margin_x = (scaled_w - self.box_w) / 2.0
        y = (scaled_h - self.box_h) / 2.0
        progress = self._progress(n)
        if self.motion == "pan_left":
            x = margin_x - margin_x * progress
        elif self.motion == "pan_right":
            x = margin_x + margin_x * progress
        else:
            x = margin_x
        return int(x), int(y), self.box_w, self.box_h

    def scale_expr(self) -> str:
        """The scale factor as an ffmpeg expression over the frame number `n`."""
        last = self.last_index
        if self.motion == "zoom_in":
            return f"1.00+{ZOOM_DELTA:.2f}*(n/{last})"
        if self.motion == "zoom_out":
            return f"{1.0 + ZOOM_DELTA:.2f}-{ZOOM_DELTA:.2f}*(n/{last})"
        if self.motion in ("pan_left", "pan_right"):
            return f"{PAN_SCALE:.2f}"
        return "1.00"

    def crop_x_expr(self) -> str:
        last = self.last_index
        if self.motion == "pan_left":
            return f"(iw-ow)/2-(iw-ow)/2*(n/{last})"
        if self.motion == "pan_right":
            return f"(iw-ow)/2+(iw-ow)/2*(n/{last})"
        return "(iw-ow)/2"

    def _progress(self, n: int) -> float:
        n = min(max(n, 0), self.last_index)
        return n / self.last_index


def motion_path(motion: str, duration_sec: float, box_w: int, box_h: int, fps: int = FPS) -> MotionPath:
    return MotionPath(motion=motion, frames=frame_count(duration_sec, fps), box_w=box_w, box_h=box_h)
