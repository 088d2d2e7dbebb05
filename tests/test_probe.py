from __future__ import annotations

import asyncio
import json
import subprocess
import time
from types import SimpleNamespace

import pytest
import requests

from engine.config import AppConfig
from engine.errors import AuthenticationRequiredError, ProbeUnavailableError
from engine.probe import (
    PipedProbe,
    YtDlpCliProbe,
    YtDlpProbe,
    make_probe,
    piped_payload_to_info,
    run_probe,
)
from media.formats import normalize_formats


def _ydl_factory(result=None, error: Exception | None = None, seen: list | None = None):
    class _FakeYDL:
        def __init__(self, opts):
            if seen is not None:
                seen.append(opts)

        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc, tb):
            return False

        def extract_info(self, url, download=False):
            assert download is False
            if error is not None:
                raise error
            return result

    return _FakeYDL


def test_ytdlp_probe_returns_info_and_passes_cookie_options() -> None:
    seen: list = []
    config = AppConfig(cookies_from_browser="firefox", browser_profile="work")
    probe = YtDlpProbe(config, ydl_factory=_ydl_factory({"id": "abcdefghijk", "formats": []}, seen=seen))

    info = probe.probe("abcdefghijk")

    assert info["id"] == "abcdefghijk"
    assert seen[0]["cookiesfrombrowser"] == ("firefox", "work", None, None)
    assert seen[0]["skip_download"] is True
    assert seen[0]["noplaylist"] is True


def test_ytdlp_probe_maps_sign_in_gate_to_auth_error() -> None:
    error = Exception("ERROR: [youtube] abcdefghijk: Sign in to confirm you’re not a bot")
    probe = YtDlpProbe(AppConfig(), ydl_factory=_ydl_factory(error=error))

    with pytest.raises(AuthenticationRequiredError):
        probe.probe("abcdefghijk")


def test_ytdlp_probe_other_failures_are_unavailable() -> None:
    probe = YtDlpProbe(AppConfig(), ydl_factory=_ydl_factory(error=Exception("HTTP Error 500")))

    with pytest.raises(ProbeUnavailableError):
        probe.probe("abcdefghijk")


def test_ytdlp_probe_without_metadata_is_unavailable() -> None:
    probe = YtDlpProbe(AppConfig(), ydl_factory=_ydl_factory(None))

    with pytest.raises(ProbeUnavailableError):
        probe.probe("abcdefghijk")


def test_cli_probe_parses_json_and_builds_argv() -> None:
    calls = []

    def runner(argv, **kwargs):
        calls.append((argv, kwargs))
        return SimpleNamespace(returncode=0, stdout=json.dumps({"title": "t", "formats": [{"format_id": "22"}]}), stderr="")

    probe = YtDlpCliProbe(AppConfig(cookies_file="/tokens/cookies.txt", probe_timeout_sec=12), runner=runner)

    info = probe.probe("abcdefghijk")

    argv, kwargs = calls[0]
    assert info["formats"] == [{"format_id": "22"}]
    assert argv[:4] == ["yt-dlp", "https://www.youtube.com/watch?v=abcdefghijk", "--cookies", "/tokens/cookies.txt"]
    assert "--dump-single-json" in argv
    assert kwargs["timeout"] == 12


def test_cli_probe_non_json_output_is_unavailable() -> None:
    def runner(argv, **kwargs):
        return SimpleNamespace(returncode=0, stdout="<html>oops</html>", stderr="")

    with pytest.raises(ProbeUnavailableError):
        YtDlpCliProbe(AppConfig(), runner=runner).probe("abcdefghijk")


def test_cli_probe_auth_and_timeout() -> None:
    def auth_runner(argv, **kwargs):
        return SimpleNamespace(returncode=1, stdout="", stderr="ERROR: Sign in to confirm your age")

    def slow_runner(argv, **kwargs):
        raise subprocess.TimeoutExpired(argv, kwargs.get("timeout"))

    with pytest.raises(AuthenticationRequiredError):
        YtDlpCliProbe(AppConfig(), runner=auth_runner).probe("abcdefghijk")
    with pytest.raises(ProbeUnavailableError):
        YtDlpCliProbe(AppConfig(), runner=slow_runner).probe("abcdefghijk")


class _FakeResponse:
    def __init__(self, status_code: int, payload) -> None:
        self.status_code = status_code
        self._payload = payload

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class _FakeSession:
    def __init__(self, responses: dict) -> None:
        self.responses = responses
        self.urls: list[str] = []

    def get(self, url, timeout=None):
        self.urls.append(url)
        outcome = self.responses[url.split("/")[2]]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


_PIPED_PAYLOAD = {
    "title": "Piped clip",
    "uploader": "Uploader",
    "duration": 61,
    "thumbnailUrl": "https://img.example.test/t.jpg",
    "videoStreams": [
        {
            "url": "https://cdn.example.test/v1",
            "itag": 137,
            "mimeType": "video/mp4",
            "format": "MPEG_4",
            "quality": "1080p",
            "videoOnly": True,
            "fps": 30,
            "height": 1080,
            "bitrate": 4_000_000,
            "contentLength": 9000,
        },
        {
            "url": "https://cdn.example.test/v2",
            "itag": 18,
            "mimeType": "video/mp4",
            "quality": "360p",
            "videoOnly": False,
            "height": 360,
        },
    ],
    "audioStreams": [
        {
            "url": "https://cdn.example.test/a1",
            "itag": 140,
            "mimeType": "audio/mp4",
            "bitrate": 130_000,
            "audioTrackId": "en.4",
            "audioTrackName": "English original",
            "audioTrackType": "ORIGINAL",
            "audioTrackLocale": "en",
        }
    ],
}


def test_piped_probe_fails_over_to_next_instance() -> None:
    session = _FakeSession(
        {
            "piped.one": requests.ConnectionError("refused"),
            "piped.two": _FakeResponse(200, _PIPED_PAYLOAD),
        }
    )
    probe = PipedProbe(AppConfig(piped_instances=("piped.one", "piped.two")), session=session)

    info = probe.probe("abcdefghijk")

    assert session.urls == [
        "https://piped.one/api/v1/streams/abcdefghijk",
        "https://piped.two/api/v1/streams/abcdefghijk",
    ]
    assert info["title"] == "Piped clip"
    assert info["thumbnail"] == "https://img.example.test/t.jpg"
    assert len(info["formats"]) == 3


def test_piped_streams_normalize_into_three_kinds() -> None:
    formats = normalize_formats(piped_payload_to_info(_PIPED_PAYLOAD, "abcdefghijk"))
    by_id = {f.format_id: f for f in formats}

    assert by_id["137"].is_video_only
    assert by_id["137"].size_bytes == 9000
    assert by_id["18"].is_progressive
    assert by_id["140"].is_audio_only
    assert by_id["140"].container == "m4a"
    assert by_id["140"].audio_bitrate_bps == 130_000
    assert by_id["140"].audio_track.is_original is True
    assert by_id["140"].language == "EN"


def test_piped_probe_all_instances_failing_is_unavailable() -> None:
    session = _FakeSession(
        {
            "piped.one": _FakeResponse(502, {}),
            "piped.two": _FakeResponse(200, ValueError("not json")),
        }
    )
    probe = PipedProbe(AppConfig(piped_instances=("piped.one", "piped.two")), session=session)

    with pytest.raises(ProbeUnavailableError) as excinfo:
        probe.probe("abcdefghijk")

    assert "piped.one" in excinfo.value.detail
    assert "piped.two" in excinfo.value.detail


def test_make_probe_follows_configured_provider() -> None:
    assert isinstance(make_probe(AppConfig()), YtDlpProbe)
    assert isinstance(make_probe(AppConfig(probe_provider="ytdlp-cli")), YtDlpCliProbe)
    assert isinstance(make_probe(AppConfig(probe_provider="piped")), PipedProbe)


def test_run_probe_times_out() -> None:
    class _SlowProbe:
        def probe(self, video_id):
            time.sleep(0.5)
            return {"formats": []}

    with pytest.raises(ProbeUnavailableError):
        asyncio.run(run_probe(_SlowProbe(), "abcdefghijk", timeout=0.05))


def test_run_probe_returns_result() -> None:
    class _FastProbe:
        def probe(self, video_id):
            return {"id": video_id, "formats": []}

    assert asyncio.run(run_probe(_FastProbe(), "abcdefghijk", timeout=5))["id"] == "abcdefghijk"
