import pytest

from reelcraft.engine.errors import ValidationFailed
from reelcraft.engine.guard import validate_request

TINY_PNG = "data:image/png;base64,iVBORw0KGgo="


def _items(n, data_url=TINY_PNG, mime="image/png"):
    return [{"name": f"p{i}.png", "mime": mime, "dataUrl": data_url} for i in range(n)]


def test_accepts_forty_items(settings):
    items, options = validate_request({"items": _items(40)}, settings)
    assert len(items) == 40
    assert options.duration_sec == 2.5
    assert options.motion == "zoom_in"


def test_rejects_forty_one_items(settings):
    with pytest.raises(ValidationFailed) as exc:
        validate_request({"items": _items(41)}, settings)
    assert "too many items" in exc.value.public_message()


@pytest.mark.parametrize("payload", [None, [], {}, {"items": []}, {"items": "x"}])
def test_rejects_empty_payloads(settings, payload):
    with pytest.raises(ValidationFailed):
        validate_request(payload, settings)


def test_rejects_item_without_source(settings):
    with pytest.raises(ValidationFailed):
        validate_request({"items": [{"name": "a.png", "mime": "image/png"}]}, settings)


def test_per_item_ceiling_uses_encoded_length(settings):
    settings.max_image_bytes = 1000
    big = "data:image/png;base64," + "A" * 1400  # 1050 bytes once decoded
    with pytest.raises(ValidationFailed):
        validate_request({"items": _items(1, data_url=big)}, settings)
    ok = "data:image/png;base64," + "A" * 1332  # 999 bytes
    validate_request({"items": _items(1, data_url=ok)}, settings)


def test_video_ceiling_is_separate(settings):
    settings.max_image_bytes = 10
    settings.max_video_bytes = 10_000
    clip = "data:video/mp4;base64," + "A" * 4000
    validate_request({"items": _items(1, data_url=clip, mime="video/mp4")}, settings)


def test_total_ceiling(settings):
    settings.max_total_bytes = 2000
    item = "data:image/png;base64," + "A" * 1200  # 900 bytes
    validate_request({"items": _items(2, data_url=item)}, settings)
    with pytest.raises(ValidationFailed):
        validate_request({"items": _items(3, data_url=item)}, settings)


def test_music_counts_against_its_own_ceiling(settings):
    settings.max_music_bytes = 100
    music = {"mime": "audio/mpeg", "dataUrl": "data:audio/mpeg;base64," + "A" * 400}
    with pytest.raises(ValidationFailed):
        validate_request({"items": _items(1), "music": music}, settings)


def test_flat_and_nested_options(settings):
    _, flat = validate_request({"items": _items(1), "durationSec": 4, "motion": "pan_left", "bgBlur": False}, settings)
    _, nested = validate_request(
        {"items": _items(1), "options": {"durationSec": 4, "motion": "pan_left", "bgBlur": False}}, settings
    )
    assert flat == nested
    assert flat.duration_sec == 4.0 and flat.motion == "pan_left" and flat.bg_blur is False


@pytest.mark.parametrize(
    "options",
    [
        {"durationSec": 0},
        {"durationSec": -1},
        {"durationSec": "abc"},
        {"maxPerVideoSec": -2},
        {"durationSec": "nan"},
        {"durationSec": "inf"},
        {"durationSec": 1e12},
        {"durationSec": 61},
        {"maxPerVideoSec": "-inf"},
        {"maxPerVideoSec": 1e9},
        {"version": "nan"},
        {"motion": "spin"},
        {"keepVideoAudio": True, "music": {"mime": "audio/mpeg", "dataUrl": "data:audio/mpeg;base64,AAAA"}},
    ],
)
def test_invalid_options(settings, options):
    with pytest.raises(ValidationFailed):
        validate_request({"items": _items(1), **options}, settings)


def test_duration_ceiling_follows_settings(settings):
    settings.max_duration_sec = 90.0
    _, options = validate_request({"items": _items(1), "durationSec": 75}, settings)
    assert options.duration_sec == 75.0
    with pytest.raises(ValidationFailed) as exc:
        validate_request({"items": _items(1), "durationSec": 91}, settings)
    assert "durationSec" in exc.value.public_message()


def test_none_motion_means_cover(settings):
    _, options = validate_request({"items": _items(1), "motion": "none"}, settings)
    assert options.motion == "cover"


def test_stored_upload_must_exist(settings):
    with pytest.raises(ValidationFailed):
        validate_request({"items": [{"mime": "video/mp4", "url": "/uploads/nope.mp4"}]}, settings)
