import json
import logging
import re
from typing import Any, Dict, Optional

from .errors import ToolError
from .schemas import MediaInfo
from .utils import ffprobe_bin, run_tool

logger = logging.getLogger(__name__)

_HDR_PIX_FMT = re.compile(r"p1[0246]|^p01[026]")


def probe_json(path: str, timeout: Optional[float] = None) -> Dict[str, Any]:
    """
    Use ffprobe to read stream/format metadata. Returns an empty dict when
    ffprobe is unavailable or cannot parse the file.
    """
    cmd = [
        ffprobe_bin(),
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_streams",
        "-show_format",
        path,
    ]
    try:
        out = run_tool(cmd, timeout=timeout)
    except ToolError as e:
        logger.warning(f"ffprobe failed for {path}: {e.stderr_tail.strip()[:300]}")
        return {}
    try:
        return json.loads(out or "{}")
    except ValueError:
        return {}


def _is_attached_picture(stream: Dict[str, Any]) -> bool:
    disposition = stream.get("disposition") or {}
    return bool(disposition.get("attached_pic"))


def rotation_of(stream: Dict[str, Any]) -> int:
    """
    Clockwise display rotation in {0, 90, 180, 270}.

    The legacy `rotate` tag is clockwise; the display matrix side data is
    counter-clockwise, so it is negated.
    """
    tags = stream.get("tags") or {}
    degrees = None
    if tags.get("rotate") not in (None, ""):
        try:
            degrees = float(str(tags["rotate"]).strip())
        except ValueError:
            degrees = None
    if degrees is None:
        for sd in stream.get("side_data_list") or []:
            if isinstance(sd, dict) and sd.get("rotation") is not None:
                try:
                    degrees = -float(sd["rotation"])
                except (TypeError, ValueError):
                    continue
                break
    if degrees is None:
        return 0
    return int(round(degrees / 90.0)) * 90 % 360


def is_hdr(stream: Dict[str, Any]) -> bool:
    tags = stream.get("tags") or {}
    primaries = str(stream.get("color_primaries") or tags.get("color_primaries") or "").lower()
    space = str(stream.get("color_space") or tags.get("color_space") or "").lower()
    transfer = str(stream.get("color_transfer") or tags.get("color_transfer") or "").lower()
    pix_fmt = str(stream.get("pix_fmt") or "").lower()
    if "2020" in primaries or "2020" in space:
        return True
    if "2084" in transfer or "hlg" in transfer or "arib-std-b67" in transfer:
        return True
    return bool(_HDR_PIX_FMT.search(pix_fmt))


def _duration(meta: Dict[str, Any], stream: Optional[Dict[str, Any]]) -> float:
    for source in ((meta.get("format") or {}), stream or {}):
        try:
            value = float(source.get("duration") or 0)
        except (TypeError, ValueError):
            value = 0.0
        if value > 0:
            return value
    return 0.0


def media_info_from_probe(meta: Dict[str, Any]) -> MediaInfo:
    """Parse ffprobe JSON into a MediaInfo; missing fields fall back to canvas defaults."""
    if not meta or not meta.get("streams"):
        return MediaInfo()
    streams = meta.get("streams") or []
    video = next(
        (s for s in streams if s.get("codec_type") == "video" and not _is_attached_picture(s)),
        None,
    )
    has_audio = any(s.get("codec_type") == "audio" for s in streams)
    info = MediaInfo(
        has_video=video is not None,
        has_audio=has_audio,
        duration=_duration(meta, video),
        probed=True,
    )
    if video is not None:
        try:
            info.width = int(video.get("width") or info.width)
            info.height = int(video.get("height") or info.height)
        except (TypeError, ValueError):
            pass
        info.rotation = rotation_of(video)
        info.is_hdr = is_hdr(video)
    return info


def probe(path: str, timeout: Optional[float] = None) -> MediaInfo:
    """Probe a local media file. Never raises; corrupt input yields defaults."""
    return media_info_from_probe(probe_json(path, timeout=timeout))
