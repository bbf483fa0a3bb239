import base64
import binascii
import io
import logging
import shutil
from pathlib import Path
from typing import Optional, Tuple
from urllib.parse import unquote_to_bytes

import pillow_heif
from PIL import Image, ImageCms, ImageOps, UnidentifiedImageError

from .errors import MusicMustBeAudio, UnsupportedType, ValidationFailed
from .media import probe
from .schemas import AUDIO, IMAGE, VIDEO, MediaInfo, MediaItem
from .utils import ensure_dir

pillow_heif.register_heif_opener()

logger = logging.getLogger(__name__)

ALLOWED_MIME_TYPES = {
    IMAGE: {
        "image/png",
        "image/jpeg",
        "image/jpg",
        "image/gif",
        "image/bmp",
        "image/webp",
        "image/heic",
        "image/heif",
        "image/tiff",
    },
    VIDEO: {
        "video/mp4",
        "video/quicktime",
        "video/webm",
        "video/x-matroska",
        "video/x-m4v",
    },
    AUDIO: {
        "audio/mpeg",
        "audio/mp3",
        "audio/mp4",
        "audio/aac",
        "audio/x-m4a",
        "audio/m4a",
        "audio/wav",
        "audio/x-wav",
        "audio/wave",
        "audio/ogg",
        "audio/flac",
        "audio/webm",
    },
}

EXTENSIONS = {
    "video/mp4": ".mp4",
    "video/quicktime": ".mov",
    "video/webm": ".webm",
    "video/x-matroska": ".mkv",
    "video/x-m4v": ".m4v",
    "audio/mpeg": ".mp3",
    "audio/mp3": ".mp3",
    "audio/mp4": ".m4a",
    "audio/x-m4a": ".m4a",
    "audio/m4a": ".m4a",
    "audio/aac": ".aac",
    "audio/wav": ".wav",
    "audio/x-wav": ".wav",
    "audio/wave": ".wav",
    "audio/ogg": ".ogg",
    "audio/flac": ".flac",
    "audio/webm": ".webm",
}

JPEG_QUALITY = 82


def _split_data_url(data_url: str) -> Tuple[str, bool, str]:
    if not data_url or not data_url.startswith("data:") or "," not in data_url:
        raise ValidationFailed("bad_data_url")
    header, payload = data_url[5:].split(",", 1)
    params = header.split(";")
    mime = params[0].strip().lower()
    is_b64 = any(p.strip().lower() == "base64" for p in params[1:])
    return mime, is_b64, payload


def estimate_decoded_size(data_url: str) -> int:
    """Decoded byte count of a data URL, computed from its encoded length only."""
    _, is_b64, payload = _split_data_url(data_url)
    if not is_b64:
        return len(payload)
    payload = payload.strip()
    padding = len(payload) - len(payload.rstrip("="))
    return max(0, len(payload) * 3 // 4 - padding)


def decode_data_url(data_url: str, max_bytes: Optional[int] = None) -> Tuple[str, bytes]:
    mime, is_b64, payload = _split_data_url(data_url)
    if max_bytes is not None and estimate_decoded_size(data_url) > max_bytes:
        raise ValidationFailed("item too large")
    if is_b64:
        try:
            data = base64.b64decode(payload)
        except (binascii.Error, ValueError):
            raise ValidationFailed("bad_data_url")
    else:
        data = unquote_to_bytes(payload)
    if not data:
        raise ValidationFailed("bad_data_url")
    return mime, data


def resolve_stored(url: str, public_dir: str | Path) -> Path:
    """Map a server-relative upload URL onto disk, refusing paths outside the public dir."""
    root = Path(public_dir).resolve()
    candidate = (root / url.lstrip("/")).resolve()
    if not candidate.is_relative_to(root):
        raise ValidationFailed("url outside public directory")
    if not candidate.is_file():
        raise ValidationFailed("missing_input")
    return candidate


def payload_size(item: MediaItem, public_dir: str | Path) -> int:
    if item.data_url:
        return estimate_decoded_size(item.data_url)
    return resolve_stored(item.url or "", public_dir).stat().st_size


def _to_srgb(img: Image.Image) -> Image.Image:
    """Flatten to 8-bit RGB and move any embedded colour profile to sRGB."""
    icc = img.info.get("icc_profile")
    if img.mode.startswith("I;16"):
        img = img.convert("I")
    if img.mode == "I":
        img = img.point(lambda v: v * (1 / 256)).convert("L")
    elif img.mode == "F":
        img = img.convert("L")
    if img.mode in ("RGBA", "LA", "PA") or (img.mode == "P" and "transparency" in img.info):
        rgba = img.convert("RGBA")
        flat = Image.new("RGBA", rgba.size, (0, 0, 0, 255))
        img = Image.alpha_composite(flat, rgba).convert("RGB")

    if icc:
        try:
            src = ImageCms.ImageCmsProfile(io.BytesIO(icc))
            dst = ImageCms.createProfile("sRGB")
            return ImageCms.profileToProfile(img, src, dst, outputMode="RGB")
        except (ImageCms.PyCMSError, OSError, ValueError) as e:
            logger.warning(f"ICC conversion failed, falling back to plain RGB: {e}")
    return img.convert("RGB")


def normalize_still(source, out_path: str | Path, max_dimension: int = 2000) -> str:
    """
    Decode any supported still (HEIC included), apply EXIF orientation,
    convert to 8-bit sRGB, bound its size and write a baseline JPEG.
    """
    try:
        with Image.open(source) as opened:
            img = ImageOps.exif_transpose(opened)
            img = _to_srgb(img)
            img.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)
            img.save(out_path, format="JPEG", quality=JPEG_QUALITY, subsampling="4:2:0")
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise UnsupportedType("unreadable image", detail=str(e))
    return str(out_path)


class Normalizer:
    """Turns raw MediaItems into transcoder-safe files inside one job's work dir."""

    def __init__(self, settings, work_dir: str | Path, timeout: Optional[float] = None):
        self.settings = settings
        self.work_dir = Path(work_dir)
        self.timeout = timeout
        ensure_dir(self.work_dir)

    def _ceiling(self, kind: str) -> int:
        if kind == IMAGE:
            return self.settings.max_image_bytes
        if kind == AUDIO:
            return self.settings.max_music_bytes
        return self.settings.max_video_bytes

    def _check_type(self, item: MediaItem, allowed_kinds: Tuple[str, ...]) -> str:
        mime = item.declared_mime
        kind = item.kind
        if kind not in allowed_kinds or mime not in ALLOWED_MIME_TYPES[kind]:
            raise UnsupportedType(mime or "unknown")
        return kind

    def _materialize(self, item: MediaItem, kind: str) -> Tuple[Optional[bytes], Optional[Path]]:
        limit = self._ceiling(kind)
        if item.data_url:
            _, data = decode_data_url(item.data_url, max_bytes=limit)
            return data, None
        path = resolve_stored(item.url or "", self.settings.public_dir)
        if path.stat().st_size > limit:
            raise ValidationFailed("item too large")
        return None, path

    def prepare(self, item: MediaItem, index: int) -> Tuple[str, str]:
        """Returns (kind, path) of the normalized intermediate for one picture item."""
        kind = self._check_type(item, (IMAGE, VIDEO))
        data, stored = self._materialize(item, kind)
        if kind == IMAGE:
            out = self.work_dir / f"in-{index}.jpg"
            source = io.BytesIO(data) if data is not None else stored
            normalize_still(source, out, self.settings.max_image_dimension)
            return kind, str(out)

        out = self.work_dir / f"in-{index}{EXTENSIONS.get(item.declared_mime, '.mp4')}"
        if data is not None:
            out.write_bytes(data)
        else:
            shutil.copyfile(stored, out)
        return kind, str(out)

    def prepare_music(self, item: MediaItem) -> Tuple[str, MediaInfo]:
        """
        Store the background track and make sure it really is audio only.
        Attached cover art does not count as video.
        """
        kind = item.kind
        if kind == VIDEO:
            raise MusicMustBeAudio(item.declared_mime)
        kind = self._check_type(item, (AUDIO,))
        data, stored = self._materialize(item, kind)
        out = self.work_dir / f"music{EXTENSIONS.get(item.declared_mime, '.m4a')}"
        if data is not None:
            out.write_bytes(data)
        else:
            shutil.copyfile(stored, out)

        info = probe(str(out), timeout=self.timeout)
        if info.probed and (info.has_video or not info.has_audio):
            raise MusicMustBeAudio("music contains a video stream" if info.has_video else "music has no audio stream")
        return str(out), info
