from __future__ import annotations

import base64
import io
import json
from pathlib import Path
from urllib.error import HTTPError, URLError

import pytest

import narrator.services.http as http
from narrator.errors import DependencyError, ServiceRequestError
from narrator.services.media_store import LocalMediaStore
from narrator.services.scene_detection import HttpSceneDetectionClient
from narrator.services.speech import HttpSpeechClient
from narrator.services.vision import OllamaVisionClient


class _FakeResponse:
    def __init__(self, body: bytes) -> None:
        self._body = body

    def read(self) -> bytes:
        return self._body

    def __enter__(self) -> _FakeResponse:
        return self

    def __exit__(self, *_exc_info: object) -> None:
        return None


def _capture(monkeypatch: pytest.MonkeyPatch, body: bytes) -> list:
    requests: list = []

    def _urlopen(req, timeout: float = 0):
        requests.append(req)
        return _FakeResponse(body)

    monkeypatch.setattr(http.request, "urlopen", _urlopen)
    return requests


def _raise_on_open(monkeypatch: pytest.MonkeyPatch, exc: Exception) -> None:
    monkeypatch.setattr(http.request, "urlopen", lambda *_, **__: (_ for _ in ()).throw(exc))


def test_request_json_maps_throttling_to_retryable_error(monkeypatch: pytest.MonkeyPatch) -> None:
    _raise_on_open(
        monkeypatch,
        HTTPError("http://svc/jobs", 429, "Too Many Requests", hdrs=None, fp=io.BytesIO(b"slow down")),
    )

    with pytest.raises(DependencyError, match="HTTP 429") as exc_info:
        http.request_json("http://svc/jobs", service="scene-detection", payload={})

    assert exc_info.value.retryable
    assert exc_info.value.status_code == 429
    assert "slow down" in exc_info.value.message


def test_request_json_maps_client_errors_to_non_retryable(monkeypatch: pytest.MonkeyPatch) -> None:
    _raise_on_open(monkeypatch, HTTPError("http://svc/jobs", 400, "Bad Request", hdrs=None, fp=io.BytesIO(b"")))

    with pytest.raises(ServiceRequestError) as exc_info:
        http.request_json("http://svc/jobs", service="scene-detection", payload={})

    assert not exc_info.value.retryable


def test_request_json_maps_connection_failures(monkeypatch: pytest.MonkeyPatch) -> None:
    _raise_on_open(monkeypatch, URLError("connection refused"))

    with pytest.raises(DependencyError, match="unreachable"):
        http.request_json("http://svc/jobs", service="speech")


def test_request_json_rejects_non_json(monkeypatch: pytest.MonkeyPatch) -> None:
    _capture(monkeypatch, b"<html>oops</html>")

    with pytest.raises(DependencyError, match="invalid JSON"):
        http.request_json("http://svc/jobs", service="vision")


def test_scene_detection_client_submits_and_parses_pages(monkeypatch: pytest.MonkeyPatch) -> None:
    client = HttpSceneDetectionClient("http://detect/", min_confidence=85)

    requests = _capture(monkeypatch, json.dumps({"job_id": "abc"}).encode("utf-8"))
    assert client.submit("s3://bucket/movie.mp4") == "abc"
    body = json.loads(requests[0].data)
    assert requests[0].full_url == "http://detect/jobs"
    assert body["min_confidence"] == 85
    assert body["segment_types"] == ["SHOT", "TECHNICAL_CUE"]

    page_body = {
        "status": "SUCCEEDED",
        "segments": [{"type": "SHOT", "start_millis": 0, "end_millis": 5000, "confidence": 99}],
        "next_token": "page-2",
    }
    requests = _capture(monkeypatch, json.dumps(page_body).encode("utf-8"))
    page = client.poll("abc", next_token="tok 1")

    assert requests[0].full_url == "http://detect/jobs/abc?next_token=tok+1"
    assert requests[0].get_method() == "GET"
    assert page.next_token == "page-2"
    assert page.detections[0].end_millis == 5000.0


def test_scene_detection_client_requires_status(monkeypatch: pytest.MonkeyPatch) -> None:
    _capture(monkeypatch, b"{}")

    with pytest.raises(DependencyError, match="missing 'status'"):
        HttpSceneDetectionClient("http://detect").poll("abc")


def test_vision_client_sends_poster_frame_for_video(monkeypatch: pytest.MonkeyPatch) -> None:
    requests = _capture(monkeypatch, json.dumps({"response": '{"description": "x"}'}).encode("utf-8"))
    grabbed: list[bytes] = []

    def _grab(video: bytes) -> bytes:
        grabbed.append(video)
        return b"jpeg"

    client = OllamaVisionClient(endpoint="http://ollama", model="llava:7b", frame_grabber=_grab)
    raw = client.invoke("describe", base64.b64encode(b"mp4").decode("ascii"), "video/mp4")

    assert raw == {"content": [{"type": "text", "text": '{"description": "x"}'}]}
    assert grabbed == [b"mp4"]
    body = json.loads(requests[0].data)
    assert body["images"] == [base64.b64encode(b"jpeg").decode("ascii")]
    assert body["model"] == "llava:7b"
    assert body["stream"] is False


def test_vision_client_without_frame_grabber_rejects_video() -> None:
    with pytest.raises(DependencyError, match="frame grabber") as exc_info:
        OllamaVisionClient().invoke("describe", "", "video/mp4")

    assert not exc_info.value.retryable


def test_vision_client_returns_empty_envelope_without_response(monkeypatch: pytest.MonkeyPatch) -> None:
    _capture(monkeypatch, b"{}")

    assert OllamaVisionClient().invoke("describe", "aW1n", "image/png") == {"content": []}


def test_speech_client_returns_audio_and_rejects_empty_stream(monkeypatch: pytest.MonkeyPatch) -> None:
    requests = _capture(monkeypatch, b"ID3audio")
    client = HttpSpeechClient(endpoint="http://tts", sample_rate=16000)

    assert client.synthesize("Hello.", "Joanna", "mp3") == b"ID3audio"
    body = json.loads(requests[0].data)
    assert body == {"model": "tts-1", "input": "Hello.", "voice": "Joanna", "response_format": "mp3", "sample_rate": 16000}

    _capture(monkeypatch, b"")
    with pytest.raises(DependencyError, match="empty audio"):
        client.synthesize("Hello.", "Joanna", "mp3")


def test_media_store_resolves_local_and_bucket_locations(tmp_path: Path) -> None:
    bucket_file = tmp_path / "buckets" / "media" / "videos" / "clip.mp4"
    bucket_file.parent.mkdir(parents=True)
    bucket_file.write_bytes(b"bucket")
    local_file = tmp_path / "local.mp4"
    local_file.write_bytes(b"local")
    store = LocalMediaStore(bucket_root=tmp_path / "buckets")

    assert store.fetch("s3://media/videos/clip.mp4", tmp_path / "out" / "a.mp4").read_bytes() == b"bucket"
    assert store.fetch(f"file://{local_file}", tmp_path / "out" / "b.mp4").read_bytes() == b"local"
    assert store.fetch(str(local_file), tmp_path / "out" / "c.mp4").read_bytes() == b"local"

    with pytest.raises(ServiceRequestError, match="not found"):
        store.fetch("gs://media/missing.mp4", tmp_path / "out" / "d.mp4")
    with pytest.raises(ServiceRequestError, match="No bucket root"):
        LocalMediaStore().fetch("s3://media/videos/clip.mp4", tmp_path / "out" / "e.mp4")


def test_media_store_downloads_urls(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    requests = _capture(monkeypatch, b"remote-bytes")

    path = LocalMediaStore().fetch("https://cdn.example.com/clip.mp4", tmp_path / "input.mp4")

    assert path.read_bytes() == b"remote-bytes"
    assert requests[0].get_method() == "GET"
