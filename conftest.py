import base64
import io
import os
import shutil
import tempfile

import pytest
from PIL import Image

from reelcraft.config import Settings


@pytest.fixture()
def temp_root():
    tmpdir = tempfile.mkdtemp(prefix="reelcraft_")
    yield tmpdir
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture()
def settings(temp_root):
    public = os.path.join(temp_root, "public")
    s = Settings(
        database_url=f"sqlite:///{os.path.join(temp_root, 'reelcraft.db')}",
        public_dir=public,
        renders_dir=os.path.join(public, "renders"),
        uploads_dir=os.path.join(public, "uploads"),
        work_dir=os.path.join(temp_root, "work"),
        poll_interval_sec=0.05,
    )
    s.ensure_dirs()
    return s


@pytest.fixture()
def store(settings):
    from reelcraft.engine.store import JobStore

    js = JobStore(settings.database_url)
    yield js
    js.dispose()


@pytest.fixture()
def app_client(settings, store):
    from reelcraft.app import create_app

    app = create_app(settings, store=store)
    app.config.update({"TESTING": True})
    return app.test_client()


def make_data_url(img: Image.Image, fmt: str = "PNG", mime: str = "image/png") -> str:
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return f"data:{mime};base64,{base64.b64encode(buf.getvalue()).decode('ascii')}"


@pytest.fixture()
def png_data_url():
    return make_data_url(Image.new("RGB", (64, 96), (200, 30, 30)))
