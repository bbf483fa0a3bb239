"""
Cheap request checks that run before a job is queued: item count, declared
sizes (from encoded lengths, nothing is decoded) and option validation.
"""
import logging
from typing import Any, Dict, List, Tuple

from ..config import MB
from .errors import ValidationFailed
from .normalize import payload_size
from .schemas import IMAGE, MediaItem, RenderOptions

logger = logging.getLogger(__name__)

OPTION_KEYS = (
    "durationSec",
    "maxPerVideoSec",
    "keepVideoAudio",
    "bgBlur",
    "motion",
    "music",
    "matchMusicDuration",
    "version",
)


def _options_from_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    # Options may come nested or flat next to `items`.
    if isinstance(payload.get("options"), dict):
        return payload["options"]
    return {k: payload[k] for k in OPTION_KEYS if k in payload}


def validate_request(payload: Any, settings) -> Tuple[List[MediaItem], RenderOptions]:
    if not isinstance(payload, dict):
        raise ValidationFailed("payload must be an object")
    raw_items = payload.get("items")
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationFailed("no_items")
    if len(raw_items) > settings.max_items:
        raise ValidationFailed(f"too many items ({len(raw_items)} > {settings.max_items})")

    items = [MediaItem.from_dict(raw) for raw in raw_items]
    options = RenderOptions.from_dict(_options_from_payload(payload))
    check_limits(items, options, settings)
    return items, options


def check_limits(items: List[MediaItem], options: RenderOptions, settings) -> int:
    """Item count, duration, per-item, music and total size ceilings. Returns the estimated total in bytes."""
    if len(items) > settings.max_items:
        raise ValidationFailed(f"too many items ({len(items)} > {settings.max_items})")
    for key, value in (("durationSec", options.duration_sec), ("maxPerVideoSec", options.max_per_video_sec)):
        if value > settings.max_duration_sec:
            raise ValidationFailed(f"{key} must be <= {settings.max_duration_sec:g}")
    total = 0
    for index, item in enumerate(items):
        size = payload_size(item, settings.public_dir)
        ceiling = settings.max_image_bytes if item.kind == IMAGE else settings.max_video_bytes
        if size > ceiling:
            raise ValidationFailed(f"item {index} is larger than {ceiling // MB} MB")
        total += size

    if options.music is not None:
        size = payload_size(options.music, settings.public_dir)
        if size > settings.max_music_bytes:
            raise ValidationFailed(f"music is larger than {settings.max_music_bytes // MB} MB")
        total += size

    if total > settings.max_total_bytes:
        raise ValidationFailed(f"request is larger than {settings.max_total_bytes // MB} MB")
    return total
