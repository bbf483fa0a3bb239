import logging
import math
import os
from pathlib import Path
from typing import List, Optional

from .errors import AssemblyFailed, ToolError
from .render import AUDIO_RATE
from .schemas import FPS, IMAGE, ItemPlan, PreparedItem, RenderOptions
from .utils import ffmpeg_cmd, remove_quietly, run_tool

logger = logging.getLogger(__name__)

MUSIC_BITRATE = "192k"
# Budget assumed for a video whose length could not be probed and is not capped.
UNKNOWN_VIDEO_ESTIMATE_SEC = 3.0


def _floor_to_frames(seconds: float, fps: int = FPS) -> float:
    return math.floor(seconds * fps + 1e-6) / fps


def _video_length(item: PreparedItem, cap: float) -> float:
    duration = item.info.duration
    if cap > 0:
        return min(duration, cap) if duration > 0 else cap
    return duration


def fitted_image_duration(
    music_seconds: float,
    video_seconds: float,
    image_count: int,
    min_image_sec: float,
    fps: int = FPS,
) -> float:
    """Per-still duration so that videos plus stills add up to the music length."""
    per_image = max(min_image_sec, (music_seconds - video_seconds) / image_count)
    return max(2.0 / fps, _floor_to_frames(per_image, fps))


def plan_timeline(
    prepared: List[PreparedItem],
    options: RenderOptions,
    music_seconds: Optional[float] = None,
    min_image_sec: float = 1.0,
    fps: int = FPS,
) -> List[ItemPlan]:
    """
    Decide how long every item lasts, in input order.

    Without duration matching stills get `duration_sec` and videos their
    (capped) length. With matching, the stills share whatever the capped
    videos leave of the music, and items are admitted one by one against the
    remaining budget until it runs out.
    """
    cap = options.max_per_video_sec
    matching = bool(options.match_music_duration and music_seconds and music_seconds > 0)

    if not matching:
        plans = []
        for item in prepared:
            if item.kind == IMAGE:
                plans.append(ItemPlan(item.index, item.kind, options.duration_sec))
            else:
                plans.append(ItemPlan(item.index, item.kind, _video_length(item, cap), trim=cap if cap > 0 else None))
        return plans

    images = [p for p in prepared if p.kind == IMAGE]
    video_budget = sum(_video_length(p, cap) or UNKNOWN_VIDEO_ESTIMATE_SEC for p in prepared if p.kind != IMAGE)
    per_image = options.duration_sec
    if images:
        per_image = fitted_image_duration(music_seconds, video_budget, len(images), min_image_sec, fps)

    frame = 1.0 / fps
    remaining = _floor_to_frames(music_seconds, fps)
    plans = []
    for item in prepared:
        if remaining < 2 * frame - 1e-9:
            break
        if item.kind == IMAGE:
            duration = min(per_image, remaining)
            plans.append(ItemPlan(item.index, item.kind, duration))
        else:
            length = _video_length(item, cap) or UNKNOWN_VIDEO_ESTIMATE_SEC
            duration = _floor_to_frames(min(length, remaining), fps)
            plans.append(ItemPlan(item.index, item.kind, duration, trim=duration))
        remaining = _floor_to_frames(remaining - duration + 1e-9, fps)
    logger.info(
        f"Fitted {len(plans)}/{len(prepared)} items to {music_seconds:.2f}s of music "
        f"({per_image:.2f}s per still, {video_budget:.2f}s of video)"
    )
    return plans


def write_concat_list(paths: List[str], list_path: str | Path) -> str:
    lines = ["ffconcat version 1.0"]
    for p in paths:
        quoted = Path(p).resolve().as_posix().replace("'", "'\\''")
        lines.append(f"file '{quoted}'")
    Path(list_path).write_text("\n".join(lines) + "\n", encoding="utf-8")
    return str(list_path)


def concat_cmd(list_path: str, out_path: str) -> List[str]:
    # Segments share one codec profile, so this is a pure stream copy.
    return ffmpeg_cmd(
        "-f", "concat", "-safe", "0", "-i", list_path,
        "-c", "copy", "-movflags", "+faststart", "-f", "mp4",
        out_path,
    )


def replace_audio_cmd(video_path: str, music_path: str, out_path: str, picture_seconds: float = 0.0) -> List[str]:
    """Loop the music forever, cut it at the picture's end, copy the video stream."""
    args = [
        "-i", video_path,
        "-stream_loop", "-1", "-i", music_path,
        "-map", "0:v:0", "-map", "1:a:0",
        "-c:v", "copy",
        "-c:a", "aac", "-ac", "2", "-ar", str(AUDIO_RATE), "-b:a", MUSIC_BITRATE,
    ]
    if picture_seconds > 0:
        args += ["-t", f"{picture_seconds:.3f}"]
    args += ["-shortest", "-movflags", "+faststart", "-f", "mp4", out_path]
    return ffmpeg_cmd(*args)


def partial_path(final_path: Path) -> Path:
    return final_path.with_name(f".{final_path.stem}.partial{final_path.suffix}")


def assemble(
    segments: List[str],
    work_dir: str | Path,
    final_path: str | Path,
    music_path: Optional[str] = None,
    picture_seconds: float = 0.0,
    timeout: Optional[float] = None,
) -> str:
    """
    Concatenate segments in order and publish the result atomically.

    The output is written to a hidden partial file next to `final_path` and
    renamed into place only once every step succeeded.
    """
    if not segments:
        raise AssemblyFailed("no_segments")
    work_dir = Path(work_dir)
    final_path = Path(final_path)
    partial = partial_path(final_path)
    list_path = write_concat_list(segments, work_dir / "concat.txt")
    try:
        if music_path:
            joined = str(work_dir / "timeline.mp4")
            run_tool(concat_cmd(list_path, joined), timeout=timeout)
            run_tool(replace_audio_cmd(joined, music_path, str(partial), picture_seconds), timeout=timeout)
            remove_quietly(joined)
        else:
            run_tool(concat_cmd(list_path, str(partial)), timeout=timeout)
    except ToolError as e:
        remove_quietly(partial)
        raise AssemblyFailed("music" if music_path else "concat", detail=e.stderr_tail)
    os.replace(partial, final_path)
    return str(final_path)
