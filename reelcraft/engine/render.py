import logging
from dataclasses import dataclass
from typing import List, Optional

from .errors import SegmentBuildFailed, ToolError
from .filtergraph import Filter, FilterGraph, node
from .geometry import (
    FADE_IN_SEC,
    fade_out_duration,
    fit_contain,
    motion_path,
    oriented_size,
)
from .schemas import FPS, HEIGHT, IMAGE, VIDEO, WIDTH, MediaInfo
from .utils import ffmpeg_cmd, run_tool

logger = logging.getLogger(__name__)

SWS_FLAGS = "bicubic+accurate_rnd+full_chroma_int"
BLUR_SIGMA = 36
PRESET = "veryfast"
CRF = "23"
AUDIO_RATE = 44100
AUDIO_BITRATE = "160k"
SILENCE = f"anullsrc=channel_layout=stereo:sample_rate={AUDIO_RATE}"
# Silent bed length when the video duration is unknown; -shortest trims it.
OPEN_ENDED_BED_SEC = 9999

VIDEO_CODEC_ARGS = [
    "-c:v", "libx264", "-preset", PRESET, "-crf", CRF,
    "-pix_fmt", "yuv420p", "-r", str(FPS),
]
AUDIO_CODEC_ARGS = [
    "-c:a", "aac", "-ac", "2", "-ar", str(AUDIO_RATE), "-b:a", AUDIO_BITRATE,
]


@dataclass
class SegmentSpec:
    """Everything needed to turn one prepared item into a uniform segment."""

    index: int
    kind: str
    input_path: str
    output_path: str
    info: MediaInfo
    duration: float
    trim: Optional[float] = None
    keep_audio: bool = False
    bg_blur: bool = True
    motion: str = "cover"


def tonemap_filters() -> List[Filter]:
    """HDR (PQ/HLG, BT.2020) to SDR BT.709."""
    return [
        node("zscale", t="linear", npl=100),
        node("format", "gbrpf32le"),
        node("zscale", p="bt709"),
        node("tonemap", tonemap="hable", desat=0),
        node("zscale", t="bt709", m="bt709", r="tv"),
        node("format", "yuv420p"),
    ]


def build_segment_graph(
    kind: str,
    info: MediaInfo,
    duration: float,
    motion: str = "cover",
    bg_blur: bool = True,
    fps: int = FPS,
) -> FilterGraph:
    """
    Background cover-fill (optionally blurred) with the contain box on top.
    Stills get the motion path; videos are tone-mapped first when HDR.
    """
    src_w, src_h = oriented_size(info.width, info.height, info.rotation)
    fit_w, fit_h = fit_contain(src_w, src_h, WIDTH, HEIGHT)

    graph = FilterGraph()
    # the decoder has already turned rotated sources upright; only the fit uses the swapped size
    head: List[Filter] = []
    if kind == VIDEO and info.is_hdr:
        head += tonemap_filters()
    head += [node("setsar", 1), node("split", 2)]
    graph.add(["0:v"], head, ["bg", "fg"])

    background = [
        node("scale", WIDTH, HEIGHT, force_original_aspect_ratio="increase", flags=SWS_FLAGS),
        node("crop", WIDTH, HEIGHT),
    ]
    if bg_blur:
        background.append(node("gblur", sigma=BLUR_SIGMA))
    background.append(node("setsar", 1))
    graph.add(["bg"], background, ["bgv"])

    graph.add(["fg"], [node("scale", fit_w, fit_h, flags=SWS_FLAGS), node("setsar", 1)], ["fg0"])

    animate = [node("copy")]
    if kind == IMAGE:
        path = motion_path(motion, duration, fit_w, fit_h, fps)
        if path.animated:
            zoom = path.scale_expr()
            animate = [
                node("scale", w=f"iw*({zoom})", h=f"ih*({zoom})", eval="frame"),
                node("crop", fit_w, fit_h, x=path.crop_x_expr(), y="(ih-oh)/2"),
            ]
    graph.add(["fg0"], animate, ["fgv"])

    tail = [
        node("overlay", x="(W-w)/2", y="(H-h)/2"),
        node("fade", t="in", st=0, d=FADE_IN_SEC),
    ]
    if duration > 0:
        fade_out = fade_out_duration(duration)
        tail.append(node("fade", t="out", st=round(max(0.0, duration - fade_out), 3), d=round(fade_out, 3)))
    # the output -r fixes the rate; an fps filter here would drop the last frame
    tail.append(node("format", "yuv420p"))
    graph.add(["bgv", "fgv"], tail, ["v"])
    return graph


def _sec(value: float) -> str:
    return f"{value:.3f}"


def image_segment_cmd(spec: SegmentSpec) -> List[str]:
    graph = build_segment_graph(IMAGE, spec.info, spec.duration, spec.motion, spec.bg_blur)
    return ffmpeg_cmd(
        "-loop", "1", "-framerate", str(FPS), "-t", _sec(spec.duration), "-i", spec.input_path,
        "-f", "lavfi", "-t", _sec(spec.duration), "-i", SILENCE,
        "-filter_complex", graph.render(),
        "-map", f"[{graph.output}]", "-map", "1:a",
        *VIDEO_CODEC_ARGS, *AUDIO_CODEC_ARGS,
        "-t", _sec(spec.duration),
        "-movflags", "+faststart", "-threads", "1",
        "-shortest",
        spec.output_path,
    )


def video_segment_cmd(spec: SegmentSpec) -> List[str]:
    """
    Original audio is passed through only when asked for and present;
    otherwise a silent bed keeps the segment's stream layout uniform.
    """
    graph = build_segment_graph(VIDEO, spec.info, spec.duration, "cover", spec.bg_blur)
    args: List[str] = []
    if spec.trim and spec.trim > 0:
        args += ["-t", _sec(spec.trim)]
    args += ["-i", spec.input_path]

    use_source_audio = spec.keep_audio and spec.info.has_audio
    if use_source_audio:
        audio_map = "0:a:0"
    else:
        bed = spec.duration if spec.duration > 0 else OPEN_ENDED_BED_SEC
        args += ["-f", "lavfi", "-t", _sec(bed), "-i", SILENCE]
        audio_map = "1:a"

    args += [
        "-filter_complex", graph.render(),
        "-map", f"[{graph.output}]", "-map", audio_map,
        *VIDEO_CODEC_ARGS, *AUDIO_CODEC_ARGS,
    ]
    if spec.duration > 0:
        args += ["-t", _sec(spec.duration)]
    args += ["-movflags", "+faststart", "-threads", "1", "-shortest", spec.output_path]
    return ffmpeg_cmd(*args)


def compile_segment(spec: SegmentSpec, timeout: Optional[float] = None) -> str:
    """Run the transcoder once for one item. Not retried on failure."""
    cmd = image_segment_cmd(spec) if spec.kind == IMAGE else video_segment_cmd(spec)
    logger.info(
        f"Segment {spec.index}: {spec.kind} {spec.info.width}x{spec.info.height} "
        f"rot={spec.info.rotation} dur={spec.duration:.2f}s"
    )
    try:
        run_tool(cmd, timeout=timeout)
    except ToolError as e:
        raise SegmentBuildFailed(f"item {spec.index}", detail=e.stderr_tail)
    return spec.output_path
