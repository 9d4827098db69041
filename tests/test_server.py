import os
from dataclasses import replace

from fastapi.testclient import TestClient

import server
from fakes import FakeDownloader, FakeMuxer, FakeProvider, audio_only, combined, details, video_only
from tubeconv.config import Settings
from tubeconv.errors import Forbidden, NotFound

client = TestClient(server.app)

AUDIO_SET = details(audio_only("139", 128), audio_only("140", 192), audio_only("141", 256))


def make_client(tmp_path, result=AUDIO_SET, error=None, mode="stream", downloader=None, muxer=None):
    provider = FakeProvider(result, error=error)
    app = server.create_app(
        Settings(convert_mode=mode, temp_dir=str(tmp_path), ffmpeg_path=str(tmp_path / "no-ffmpeg")),
        metadata_provider=provider,
        downloader=downloader or FakeDownloader(),
        muxer=muxer or FakeMuxer(),
    )
    return TestClient(app), provider


def test_root_ok():
    resp = client.get("/")
    assert resp.status_code == 200
    data = resp.json()
    assert data.get("status") == "ok"


def test_health_includes_versions():
    resp = client.get("/api/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data.get("status") == "ok"
    assert "yt_dlp" in data
    assert "ffmpeg" in data
    assert "convert_mode" in data


def test_health_reports_missing_ffmpeg(tmp_path):
    test_client, _ = make_client(tmp_path)
    data = test_client.get("/api/health").json()
    assert data["ffmpeg"] == "missing"
    assert data["metadata_provider"] == "fake"


def test_info_returns_metadata(tmp_path):
    test_client, provider = make_client(tmp_path)
    resp = test_client.post("/api/info", json={"url": "https://www.youtube.com/watch?v=abcdefghijk"})
    assert resp.status_code == 200
    assert resp.json() == {
        "videoId": "abcdefghijk",
        "title": "Test Video: Part 1!",
        "author": "Tester",
        "duration": 212,
        "thumbnail": "https://img.test/abcdefghijk.jpg",
        "viewCount": 1000,
    }
    assert provider.calls == ["abcdefghijk"]


def test_info_requires_url(tmp_path):
    test_client, provider = make_client(tmp_path)
    resp = test_client.post("/api/info", json={})
    assert resp.status_code == 400
    assert resp.json() == {"error": "URL is required"}
    assert provider.calls == []


def test_info_maps_provider_errors(tmp_path):
    for error, status in ((NotFound(), 404), (Forbidden(), 403), (RuntimeError("boom"), 500)):
        test_client, _ = make_client(tmp_path, error=error)
        resp = test_client.post("/api/info", json={"url": "abcdefghijk"})
        assert resp.status_code == status
        assert "error" in resp.json()
        assert "boom" not in resp.json()["error"]


def test_convert_streams_best_audio(tmp_path):
    downloader = FakeDownloader()
    test_client, _ = make_client(tmp_path, downloader=downloader)
    resp = test_client.post(
        "/api/convert",
        json={"url": "https://youtu.be/abcdefghijk", "format": "mp3", "quality": "256"},
    )
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "audio/mp4"
    assert resp.headers["content-disposition"] == 'attachment; filename="Test_Video_Part_1.m4a"'
    assert resp.content == b"141-bytes"
    assert downloader.opened == ["141"]
    assert downloader.streams[0].closed == 1


def test_convert_merges_separate_streams(tmp_path):
    result = details(combined("18", 360), video_only("137", 1080), audio_only("140", 128))
    test_client, _ = make_client(tmp_path, result=result)
    resp = test_client.post(
        "/api/convert",
        json={"url": "https://youtu.be/abcdefghijk", "format": "mp4", "quality": "1080"},
    )
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "video/mp4"
    assert resp.content == b"merged:137-bytes+140-bytes"
    assert os.listdir(tmp_path) == []


def test_convert_rejects_invalid_url_without_network(tmp_path):
    test_client, provider = make_client(tmp_path)
    resp = test_client.post("/api/convert", json={"url": "not a url", "format": "mp3"})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid YouTube URL"}
    assert provider.calls == []


def test_convert_upstream_open_failure_is_json(tmp_path):
    test_client, _ = make_client(tmp_path, downloader=FakeDownloader(fail_open={"141"}))
    resp = test_client.post("/api/convert", json={"url": "abcdefghijk", "format": "mp3"})
    assert resp.status_code == 500
    assert resp.json() == {"error": "Failed to process. Please try again."}


def test_convert_no_matching_format(tmp_path):
    test_client, _ = make_client(tmp_path, result=details())
    resp = test_client.post("/api/convert", json={"url": "abcdefghijk", "format": "mp4", "quality": "720"})
    assert resp.status_code == 500
    assert "error" in resp.json()


def test_convert_bad_format(tmp_path):
    test_client, _ = make_client(tmp_path)
    resp = test_client.post("/api/convert", json={"url": "abcdefghijk", "format": "avi"})
    assert resp.status_code == 400


def test_convert_invalid_json_body(tmp_path):
    test_client, _ = make_client(tmp_path)
    resp = test_client.post("/api/convert", content=b"{not json", headers={"Content-Type": "application/json"})
    assert resp.status_code == 400
    assert "error" in resp.json()


def test_convert_services_mode(tmp_path):
    test_client, provider = make_client(tmp_path, mode="services")
    resp = test_client.post("/api/convert", json={"url": "https://youtu.be/abcdefghijk", "format": "mp4"})
    assert resp.status_code == 200
    data = resp.json()
    assert data["success"] is True
    assert [service["name"] for service in data["services"]] == ["Y2Mate", "SaveFrom", "SSYouTube"]
    assert all("abcdefghijk" in service["url"] for service in data["services"])
    assert provider.calls == []


def test_convert_link_mode(tmp_path):
    test_client, _ = make_client(tmp_path, mode="link")
    resp = test_client.post("/api/convert", json={"url": "abcdefghijk", "format": "mp3", "quality": "320"})
    assert resp.status_code == 200
    assert resp.json() == {
        "success": True,
        "downloadUrl": "https://media.test/141",
        "filename": "Test_Video_Part_1.m4a",
    }


def test_non_post_is_method_not_allowed(tmp_path):
    test_client, _ = make_client(tmp_path)
    for path in ("/api/info", "/api/convert"):
        resp = test_client.get(path)
        assert resp.status_code == 405
        assert resp.json() == {"error": "Method not allowed"}


def test_options_returns_empty_200(tmp_path):
    test_client, _ = make_client(tmp_path)
    resp = test_client.options("/api/convert")
    assert resp.status_code == 200
    assert resp.content == b""


def test_cors_allows_any_origin(tmp_path):
    test_client, _ = make_client(tmp_path)
    resp = test_client.post("/api/info", json={"url": "abcdefghijk"}, headers={"Origin": "https://elsewhere.example"})
    assert resp.headers["access-control-allow-origin"] == "*"


def test_convert_omits_length_when_upstream_is_chunked(tmp_path):
    result = details(replace(combined("18", 360), filesize=5000))
    downloader = FakeDownloader(chunked=True)
    test_client, _ = make_client(tmp_path, result=result, downloader=downloader)
    resp = test_client.post("/api/convert", json={"url": "abcdefghijk", "format": "mp4", "quality": "360"})
    assert resp.status_code == 200
    assert "content-length" not in resp.headers
    assert resp.content == b"18-bytes"


def test_convert_error_after_headers_sends_no_json(tmp_path, caplog):
    downloader = FakeDownloader(fail_midway=True)
    app = server.create_app(
        Settings(temp_dir=str(tmp_path)),
        metadata_provider=FakeProvider(details(combined("22", 720))),
        downloader=downloader,
        muxer=FakeMuxer(),
    )
    test_client = TestClient(app, raise_server_exceptions=False)
    resp = test_client.post("/api/convert", json={"url": "abcdefghijk", "format": "mp4", "quality": "720"})
    assert resp.status_code == 200
    assert resp.content == b"22-b"
    assert b"error" not in resp.content
    assert downloader.streams[0].closed == 1
    assert "failed mid-transfer" in caplog.text


def test_convert_unexpected_error_is_json(tmp_path):
    test_client, _ = make_client(tmp_path, error=RuntimeError("socket exploded"))
    resp = test_client.post("/api/convert", json={"url": "abcdefghijk", "format": "mp3"})
    assert resp.status_code == 500
    assert resp.json() == {"error": "Failed to process. Please try again."}


def test_cors_preflight_is_empty_and_allows_any_header(tmp_path):
    test_client, _ = make_client(tmp_path)
    resp = test_client.options(
        "/api/convert",
        headers={
            "Origin": "https://elsewhere.example",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "X-Requested-With",
        },
    )
    assert resp.status_code == 200
    assert resp.content == b""
    assert resp.headers["access-control-allow-origin"] == "*"
