import os

import pytest

from reelcraft.engine.schemas import DONE, QUEUED

HEADERS = {"X-User-Email": "a@example.com"}
OTHER = {"X-User-Email": "b@example.com"}


def _payload(png_data_url, **options):
    return {"items": [{"name": "a.png", "mime": "image/png", "dataUrl": png_data_url}], **options}


def test_health_check(app_client):
    resp = app_client.get("/")
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["status"] == "healthy"


def test_create_and_poll_flow(app_client, png_data_url):
    # Create
    resp = app_client.post("/api/render", json=_payload(png_data_url, durationSec=3), headers=HEADERS)
    assert resp.status_code == 202
    created = resp.get_json()
    assert created["ok"] is True
    assert created["status"] == QUEUED

    # Poll
    resp = app_client.get(f"/api/render-status?jobId={created['jobId']}", headers=HEADERS)
    assert resp.status_code == 200
    assert resp.get_json() == {"ok": True, "status": QUEUED, "url": None, "error": None}
    assert "no-store" in resp.headers["Cache-Control"]


def test_status_is_owner_scoped(app_client, png_data_url):
    job_id = app_client.post("/api/render", json=_payload(png_data_url), headers=HEADERS).get_json()["jobId"]
    resp = app_client.get(f"/api/render-status?jobId={job_id}", headers=OTHER)
    assert resp.status_code == 404
    resp = app_client.get("/api/render-status", headers=HEADERS)
    assert resp.status_code == 400


def test_requests_need_an_owner(app_client, png_data_url):
    assert app_client.post("/api/render", json=_payload(png_data_url)).status_code == 401
    assert app_client.get("/api/render-status?jobId=x").status_code == 401
    assert app_client.get("/api/my-renders").status_code == 401


def test_too_many_items_never_queues(app_client, store, png_data_url):
    payload = {"items": [{"mime": "image/png", "dataUrl": png_data_url}] * 41}
    resp = app_client.post("/api/render", json=payload, headers=HEADERS)
    assert resp.status_code == 400
    body = resp.get_json()
    assert body["ok"] is False
    assert body["error"].startswith("validation_failed")
    assert store.oldest_queued() is None


def test_music_with_kept_audio_is_rejected(app_client, png_data_url):
    payload = _payload(
        png_data_url,
        keepVideoAudio=True,
        music={"mime": "audio/mpeg", "dataUrl": "data:audio/mpeg;base64,AAAA"},
    )
    assert app_client.post("/api/render", json=payload, headers=HEADERS).status_code == 400


@pytest.mark.parametrize("duration", ["nan", "inf", "1e12"])
def test_unbounded_duration_never_queues(app_client, store, png_data_url, duration):
    resp = app_client.post("/api/render", json=_payload(png_data_url, durationSec=duration), headers=HEADERS)
    assert resp.status_code == 400
    assert resp.get_json()["error"].startswith("validation_failed: durationSec")
    assert store.oldest_queued() is None


def test_done_job_reports_url(app_client, store, png_data_url):
    job_id = app_client.post("/api/render", json=_payload(png_data_url), headers=HEADERS).get_json()["jobId"]
    store.claim(job_id)
    store.mark_done(job_id, "/renders/reel-1-abc.mp4")
    data = app_client.get(f"/api/render-status?jobId={job_id}", headers=HEADERS).get_json()
    assert data["status"] == DONE
    assert data["url"] == "/renders/reel-1-abc.mp4"


def test_my_renders_and_artifact_serving(app_client, store, settings):
    name = "reel-1700000000000-abcdefgh.mp4"
    with open(os.path.join(settings.renders_dir, name), "wb") as fh:
        fh.write(b"\x00\x00\x00\x18ftypmp42")
    store.record_render("a@example.com", name, f"/renders/{name}", 12)

    resp = app_client.get("/api/my-renders", headers=HEADERS)
    assert resp.status_code == 200
    assert [r["url"] for r in resp.get_json()["renders"]] == [f"/renders/{name}"]
    assert app_client.get("/api/my-renders", headers=OTHER).get_json()["renders"] == []

    resp = app_client.get(f"/renders/{name}")
    assert resp.status_code == 200
    assert resp.mimetype == "video/mp4"


def test_partial_files_are_not_served(app_client, settings):
    with open(os.path.join(settings.renders_dir, ".reel-1.partial.mp4"), "wb") as fh:
        fh.write(b"x")
    assert app_client.get("/renders/.reel-1.partial.mp4").status_code == 404
    assert app_client.get("/renders/missing.mp4").status_code == 404


def test_unknown_endpoint(app_client):
    resp = app_client.get("/api/nope")
    assert resp.status_code == 404
    assert resp.get_json()["error"] == "Endpoint not found"
