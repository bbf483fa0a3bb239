import os
import shutil
import subprocess
from pathlib import Path

import pytest
from PIL import Image

from conftest import make_data_url
from reelcraft.engine.media import probe
from reelcraft.engine.render import SegmentSpec, compile_segment
from reelcraft.engine.schemas import DONE, FAILED, IMAGE, VIDEO, MediaItem, RenderOptions
from reelcraft.engine.utils import ffmpeg_bin, ffprobe_bin
from reelcraft.engine.worker import RenderScheduler

OWNER = "a@example.com"
FRAME = 1.0 / 30


def _tools_available() -> bool:
    if not (os.environ.get("FFPROBE_BIN") or shutil.which("ffprobe")):
        return False
    try:
        proc = subprocess.run([ffmpeg_bin(), "-version"], stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    except OSError:
        return False
    return proc.returncode == 0


pytestmark = pytest.mark.skipif(not _tools_available(), reason="ffmpeg/ffprobe not available")


def _run(cmd: list[str]) -> None:
    proc = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    if proc.returncode != 0:
        raise RuntimeError(proc.stderr.decode("utf-8", errors="ignore")[-2000:])


def _gen_test_video(path: str, duration: float = 5.0, size: str = "1280x720", fps: int = 30, with_audio: bool = True) -> None:
    ff = ffmpeg_bin()
    cmd = [ff, "-y", "-nostdin", "-hide_banner", "-loglevel", "error", "-f", "lavfi", "-i", f"testsrc=size={size}:rate={fps}"]
    if with_audio:
        cmd += ["-f", "lavfi", "-i", f"sine=frequency=440:duration={duration}"]
    cmd += ["-t", f"{duration:.3f}", "-c:v", "libx264", "-crf", "20", "-pix_fmt", "yuv420p"]
    if with_audio:
        cmd += ["-c:a", "aac", "-ar", "48000", "-ac", "2"]
    cmd += [path]
    _run(cmd)


def _rotate_tag(src: str, dst: str, degrees: int) -> None:
    ff = ffmpeg_bin()
    try:
        _run([ff, "-y", "-nostdin", "-loglevel", "error", "-display_rotation", str(degrees), "-i", src, "-c", "copy", dst])
    except RuntimeError:
        # ffmpeg < 6 only knows the legacy tag
        _run([ff, "-y", "-nostdin", "-loglevel", "error", "-i", src, "-c", "copy", "-metadata:s:v:0", f"rotate={degrees}", dst])


def _frames(path: str) -> int:
    proc = subprocess.run(
        [ffprobe_bin(), "-v", "error", "-select_streams", "v:0", "-count_frames",
         "-show_entries", "stream=nb_read_frames", "-of", "csv=p=0", path],
        stdout=subprocess.PIPE, stderr=subprocess.PIPE,
    )
    return int(proc.stdout.decode().strip().split(",")[0])


def _gen_test_music(path: str, duration: float = 10.0) -> None:
    ff = ffmpeg_bin()
    cmd = [ff, "-y", "-nostdin", "-hide_banner", "-loglevel", "error", "-f", "lavfi", "-i", f"sine=frequency=220:duration={duration}", "-c:a", "aac", "-ar", "48000", "-ac", "2", path]
    _run(cmd)


def _photo(size, color):
    return MediaItem(name="p.jpg", mime="image/jpeg", data_url=make_data_url(Image.new("RGB", size, color), fmt="JPEG", mime="image/jpeg"))


def _render(store, settings, items, options):
    job = store.create_job(OWNER, items, options)
    RenderScheduler(store, settings).tick()
    return store.get_job(job.id)


def _output(settings, job):
    return os.path.join(settings.renders_dir, Path(job.output_url).name)


def test_single_still_zoom_in(store, settings):
    job = _render(store, settings, [_photo((2000, 3000), (200, 120, 40))], RenderOptions(duration_sec=3.0, motion="zoom_in", bg_blur=True))
    assert job.status == DONE, job.error
    info = probe(_output(settings, job))
    assert (info.width, info.height) == (1080, 1920)
    assert info.duration == pytest.approx(3.0, abs=FRAME / 2)
    assert _frames(_output(settings, job)) == 90
    assert info.has_audio
    assert os.listdir(settings.work_dir) == []


def test_rotated_video_keeps_audio_and_is_capped(store, settings):
    plain = os.path.join(settings.uploads_dir, "plain.mp4")
    rotated = os.path.join(settings.uploads_dir, "rotated.mp4")
    _gen_test_video(plain, duration=7.0)
    _rotate_tag(plain, rotated, 90)
    if probe(rotated).rotation not in (90, 270):
        pytest.skip("ffmpeg build cannot tag rotation")

    item = MediaItem(name="rotated.mp4", mime="video/mp4", url="/uploads/rotated.mp4")
    job = _render(store, settings, [item], RenderOptions(keep_video_audio=True, max_per_video_sec=5.0))
    assert job.status == DONE, job.error
    info = probe(_output(settings, job))
    assert (info.width, info.height) == (1080, 1920)
    assert info.rotation == 0
    assert info.duration <= 5.0 + 0.1
    assert info.has_audio


def test_three_stills_fit_to_music(store, settings):
    music_path = os.path.join(settings.uploads_dir, "music.m4a")
    _gen_test_music(music_path, duration=10.0)
    items = [_photo((1200, 800), c) for c in ((255, 0, 0), (0, 255, 0), (0, 0, 255))]
    options = RenderOptions(
        music=MediaItem(name="music.m4a", mime="audio/mp4", url="/uploads/music.m4a"),
        match_music_duration=True,
        keep_video_audio=False,
    )
    job = _render(store, settings, items, options)
    assert job.status == DONE, job.error
    info = probe(_output(settings, job))
    assert (info.width, info.height) == (1080, 1920)
    assert info.duration == pytest.approx(10.0, abs=2 * FRAME)
    assert info.has_audio


def test_video_as_music_fails_without_artifact(store, settings):
    clip = os.path.join(settings.uploads_dir, "clip.mp4")
    _gen_test_video(clip, duration=2.0)
    options = RenderOptions(music=MediaItem(name="song.m4a", mime="audio/mp4", url="/uploads/clip.mp4"))
    job = _render(store, settings, [_photo((800, 800), (9, 9, 9))], options)
    assert job.status == FAILED
    assert job.error.startswith("music_must_be_audio")
    assert os.listdir(settings.renders_dir) == []
    assert store.list_renders(OWNER) == []


@pytest.mark.parametrize("seconds, expected", [(3.0, 90), (2.5, 75)])
def test_still_segment_keeps_every_frame(tmp_path, seconds, expected):
    still = tmp_path / "still.jpg"
    Image.new("RGB", (1200, 1600), (40, 90, 160)).save(still, "JPEG")
    spec = SegmentSpec(
        index=0,
        kind=IMAGE,
        input_path=str(still),
        output_path=str(tmp_path / "seg-000.mp4"),
        info=probe(str(still)),
        duration=seconds,
        motion="zoom_in",
    )
    out = compile_segment(spec)
    assert _frames(out) == expected
    assert probe(out).duration == pytest.approx(seconds, abs=FRAME / 2)


def test_trimmed_video_segment_keeps_every_frame(tmp_path):
    clip = str(tmp_path / "clip.mp4")
    _gen_test_video(clip, duration=7.0)
    spec = SegmentSpec(
        index=0,
        kind=VIDEO,
        input_path=clip,
        output_path=str(tmp_path / "seg-000.mp4"),
        info=probe(clip),
        duration=5.0,
        trim=5.0,
    )
    assert _frames(compile_segment(spec)) == 150
