from __future__ import annotations

import math
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from .errors import ValidationFailed

WIDTH = 1080
HEIGHT = 1920
FPS = 30

QUEUED = "QUEUED"
RUNNING = "RUNNING"
DONE = "DONE"
FAILED = "FAILED"
TERMINAL_STATUSES = (DONE, FAILED)

MOTIONS = ("zoom_in", "zoom_out", "pan_left", "pan_right", "cover")

IMAGE = "image"
VIDEO = "video"
AUDIO = "audio"


def _kind_for_mime(mime: str) -> Optional[str]:
    major = (mime or "").split("/", 1)[0].lower()
    if major in (IMAGE, VIDEO, AUDIO):
        return major
    return None


@dataclass
class MediaItem:
    """One input asset: inline data URL or a server-relative stored file."""

    name: Optional[str] = None
    mime: Optional[str] = None
    data_url: Optional[str] = None
    url: Optional[str] = None

    @property
    def declared_mime(self) -> str:
        if self.mime:
            return self.mime.strip().lower()
        if self.data_url and self.data_url.startswith("data:"):
            header = self.data_url[5:].split(",", 1)[0]
            return header.split(";", 1)[0].strip().lower()
        return ""

    @property
    def kind(self) -> Optional[str]:
        return _kind_for_mime(self.declared_mime)

    @classmethod
    def from_dict(cls, raw: Any) -> "MediaItem":
        if not isinstance(raw, dict):
            raise ValidationFailed("item must be an object")
        item = cls(
            name=raw.get("name"),
            mime=raw.get("mime"),
            data_url=raw.get("dataUrl"),
            url=raw.get("url"),
        )
        if not item.data_url and not item.url:
            raise ValidationFailed("missing_input")
        return item

    def to_dict(self) -> Dict[str, Any]:
        out = {"name": self.name, "mime": self.mime, "dataUrl": self.data_url, "url": self.url}
        return {k: v for k, v in out.items() if v is not None}


def _number(raw: Dict[str, Any], key: str, default: float) -> float:
    value = raw.get(key, default)
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ValidationFailed(f"{key} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationFailed(f"{key} must be a number")
    if not math.isfinite(number):
        raise ValidationFailed(f"{key} must be a finite number")
    return number


def _flag(raw: Dict[str, Any], key: str, default: bool) -> bool:
    value = raw.get(key, default)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "on")
    return bool(value)


@dataclass
class RenderOptions:
    duration_sec: float = 2.5
    max_per_video_sec: float = 0.0
    keep_video_audio: bool = False
    bg_blur: bool = True
    motion: str = "zoom_in"
    music: Optional[MediaItem] = None
    match_music_duration: bool = False
    version: int = 1

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "RenderOptions":
        """
        Build options from the intake payload (camelCase keys) and validate them.

        Supplying music while asking to keep the original video audio is
        rejected outright instead of silently dropping one of them.
        """
        raw = raw or {}
        if not isinstance(raw, dict):
            raise ValidationFailed("options must be an object")
        duration = _number(raw, "durationSec", 2.5)
        if duration <= 0:
            raise ValidationFailed("durationSec must be > 0")
        max_per_video = _number(raw, "maxPerVideoSec", 0.0)
        if max_per_video < 0:
            raise ValidationFailed("maxPerVideoSec must be >= 0")
        motion = raw.get("motion") or "zoom_in"
        if motion == "none":
            motion = "cover"
        if motion not in MOTIONS:
            raise ValidationFailed(f"unknown motion '{motion}'")

        music = None
        music_raw = raw.get("music")
        if music_raw:
            music = MediaItem.from_dict(music_raw)

        keep_audio = _flag(raw, "keepVideoAudio", False)
        if keep_audio and music is not None:
            raise ValidationFailed("keepVideoAudio cannot be combined with background music")

        return cls(
            duration_sec=duration,
            max_per_video_sec=max_per_video,
            keep_video_audio=keep_audio,
            bg_blur=_flag(raw, "bgBlur", True),
            motion=motion,
            music=music,
            match_music_duration=_flag(raw, "matchMusicDuration", False),
            version=int(_number(raw, "version", 1)),
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "version": self.version,
            "durationSec": self.duration_sec,
            "maxPerVideoSec": self.max_per_video_sec,
            "keepVideoAudio": self.keep_video_audio,
            "bgBlur": self.bg_blur,
            "motion": self.motion,
            "matchMusicDuration": self.match_music_duration,
        }
        if self.music is not None:
            out["music"] = self.music.to_dict()
        return out


@dataclass
class MediaInfo:
    width: int = WIDTH
    height: int = HEIGHT
    rotation: int = 0
    duration: float = 0.0
    is_hdr: bool = False
    has_video: bool = False
    has_audio: bool = False
    probed: bool = False

    @property
    def display_size(self) -> tuple[int, int]:
        """Width/height after the rotation is applied."""
        if self.rotation in (90, 270):
            return self.height, self.width
        return self.width, self.height


@dataclass
class PreparedItem:
    index: int
    kind: str
    path: str
    info: MediaInfo


@dataclass
class ItemPlan:
    """How long one admitted item lasts in the timeline."""

    index: int
    kind: str
    duration: float
    trim: Optional[float] = None


@dataclass
class RenderJob:
    id: str
    owner: str
    status: str
    items: List[MediaItem] = field(default_factory=list)
    options: RenderOptions = field(default_factory=RenderOptions)
    output_url: Optional[str] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def status_view(self) -> Dict[str, Any]:
        return {"status": self.status, "url": self.output_url, "error": self.error}

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["items"] = [it.to_dict() for it in self.items]
        data["options"] = self.options.to_dict()
        for key in ("created_at", "updated_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data
