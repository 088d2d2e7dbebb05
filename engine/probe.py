"""Metadata probes: fetch the raw format list for one video.

Every provider returns a yt-dlp shaped info dict (``title``, ``uploader``,
``duration``, ``thumbnail``, ``formats``) and raises only ``TubefetchError``
subclasses, so callers never see provider-specific failures.
"""

from __future__ import annotations

import json
import logging
import subprocess

import anyio
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
from yt_dlp import YoutubeDL

from engine.config import AppConfig
from engine.errors import (
    AuthenticationRequiredError,
    ProbeUnavailableError,
    requires_login,
)
from engine.logging_utils import log_event
from input.video_ref import watch_url

logger = logging.getLogger(__name__)

PIPED_TIMEOUT_SECONDS = 15


def _check_info(info, video_id):
    if not isinstance(info, dict):
        raise ProbeUnavailableError(f"probe returned no metadata for {video_id}")
    if not isinstance(info.get("formats"), list):
        info = dict(info)
        info["formats"] = []
    return info


class YtDlpProbe:
    """In-process probe through the ``yt_dlp`` Python API."""

    name = "ytdlp"

    def __init__(self, config: AppConfig, ydl_factory=YoutubeDL) -> None:
        self.config = config
        self._ydl_factory = ydl_factory

    def build_opts(self) -> dict:
        opts = {
            "skip_download": True,
            "quiet": True,
            "no_warnings": True,
            "noplaylist": True,
            "cachedir": False,
            "nocheckcertificate": True,
            "http_headers": dict(self.config.extra_headers),
        }
        opts.update(self.config.cookie_opts())
        return opts

    def probe(self, video_id: str) -> dict:
        url = watch_url(video_id)
        try:
            with self._ydl_factory(self.build_opts()) as ydl:
                info = ydl.extract_info(url, download=False)
        except Exception as exc:
            message = str(exc)
            if requires_login(message):
                log_event(logging.WARNING, "probe_auth_required", provider=self.name, video_id=video_id)
                raise AuthenticationRequiredError(detail=message) from exc
            log_event(logging.ERROR, "probe_failed", provider=self.name, video_id=video_id, error=message)
            raise ProbeUnavailableError(f"yt-dlp probe failed for {video_id}", detail=message) from exc
        return _check_info(info, video_id)


class YtDlpCliProbe:
    """Probe through the ``yt-dlp`` executable and ``--dump-single-json``."""

    name = "ytdlp-cli"

    def __init__(self, config: AppConfig, runner=subprocess.run) -> None:
        self.config = config
        self._runner = runner

    def build_argv(self, video_id: str) -> list[str]:
        argv = [self.config.ytdlp_binary, watch_url(video_id)]
        argv.extend(self.config.cookie_args())
        argv.extend(["--dump-single-json", "--skip-download", "--no-playlist", "--no-warnings", "--no-check-certificates"])
        for key, value in self.config.extra_headers.items():
            argv.extend(["--add-header", f"{key}:{value}"])
        return argv

    def probe(self, video_id: str) -> dict:
        argv = self.build_argv(video_id)
        try:
            result = self._runner(
                argv,
                capture_output=True,
                text=True,
                timeout=self.config.probe_timeout_sec or None,
            )
        except subprocess.TimeoutExpired as exc:
            raise ProbeUnavailableError(f"yt-dlp probe timed out for {video_id}") from exc
        except OSError as exc:
            raise ProbeUnavailableError(f"yt-dlp could not be started: {exc}") from exc

        stderr = result.stderr or ""
        if result.returncode != 0:
            if requires_login(stderr):
                log_event(logging.WARNING, "probe_auth_required", provider=self.name, video_id=video_id)
                raise AuthenticationRequiredError(detail=stderr.strip())
            log_event(
                logging.ERROR,
                "probe_failed",
                provider=self.name,
                video_id=video_id,
                returncode=result.returncode,
                stderr=stderr.strip()[-2000:],
            )
            raise ProbeUnavailableError(f"yt-dlp exited with {result.returncode}", detail=stderr.strip())
        try:
            info = json.loads(result.stdout or "")
        except json.JSONDecodeError as exc:
            raise ProbeUnavailableError("yt-dlp returned non-JSON output") from exc
        return _check_info(info, video_id)


def _piped_audio_track(stream: dict) -> dict | None:
    track = {
        "id": stream.get("audioTrackId"),
        "name": stream.get("audioTrackName"),
        "type": stream.get("audioTrackType"),
        "audioLocale": stream.get("audioTrackLocale"),
    }
    if not any(track.values()):
        return None
    return track


def piped_stream_to_format(stream: dict, *, audio_only: bool) -> dict | None:
    """Piped stream entry -> raw format record understood by ``media.formats``."""
    if not isinstance(stream, dict) or not stream.get("url"):
        return None
    record = {
        "format_id": str(stream["itag"]) if stream.get("itag") is not None else None,
        "url": stream.get("url"),
        "mimeType": stream.get("mimeType"),
        "format": stream.get("format"),
        "qualityLabel": stream.get("quality"),
        "bitrate": stream.get("bitrate"),
        "contentLength": stream.get("contentLength"),
        "hasVideo": not audio_only,
        "hasAudio": audio_only or not stream.get("videoOnly", False),
    }
    if audio_only:
        record["audioBitrate"] = stream.get("bitrate")
    else:
        record["fps"] = stream.get("fps")
        record["height"] = stream.get("height")
    track = _piped_audio_track(stream)
    if track is not None and record["hasAudio"]:
        record["audioTrack"] = track
    return record


def piped_payload_to_info(payload: dict, video_id: str) -> dict:
    formats = []
    for stream in payload.get("videoStreams") or []:
        record = piped_stream_to_format(stream, audio_only=False)
        if record is not None:
            formats.append(record)
    for stream in payload.get("audioStreams") or []:
        record = piped_stream_to_format(stream, audio_only=True)
        if record is not None:
            formats.append(record)
    return {
        "id": video_id,
        "title": payload.get("title"),
        "uploader": payload.get("uploader"),
        "duration": payload.get("duration"),
        "thumbnail": payload.get("thumbnailUrl"),
        "formats": formats,
    }


class PipedProbe:
    """Probe through public Piped instances, trying each in order."""

    name = "piped"

    def __init__(self, config: AppConfig, session: requests.Session | None = None) -> None:
        self.config = config
        self.instances = tuple(config.piped_instances)
        if session is None:
            session = requests.Session()
            retry = Retry(
                total=2,
                backoff_factor=0.4,
                status_forcelist=(429, 500, 502, 503, 504),
                allowed_methods=frozenset({"GET"}),
                respect_retry_after_header=True,
            )
            adapter = HTTPAdapter(max_retries=retry)
            session.mount("https://", adapter)
            session.mount("http://", adapter)
        self._session = session

    def _fetch(self, instance: str, video_id: str) -> dict:
        url = f"https://{instance}/api/v1/streams/{video_id}"
        resp = self._session.get(url, timeout=PIPED_TIMEOUT_SECONDS)
        if resp.status_code != 200:
            raise ProbeUnavailableError(f"{instance} answered HTTP {resp.status_code}")
        try:
            payload = resp.json()
        except ValueError as exc:
            raise ProbeUnavailableError(f"{instance} returned non-JSON output") from exc
        if not isinstance(payload, dict):
            raise ProbeUnavailableError(f"{instance} returned an unexpected payload")
        if payload.get("error"):
            message = str(payload.get("message") or payload.get("error"))
            if requires_login(message):
                raise AuthenticationRequiredError(detail=message)
            raise ProbeUnavailableError(f"{instance}: {message}")
        return payload

    def probe(self, video_id: str) -> dict:
        failures = []
        auth_error = None
        for instance in self.instances:
            try:
                payload = self._fetch(instance, video_id)
            except AuthenticationRequiredError as exc:
                auth_error = exc
                failures.append(f"{instance}: sign-in required")
                continue
            except (ProbeUnavailableError, requests.RequestException) as exc:
                logger.warning("Piped instance %s failed for %s: %s", instance, video_id, exc)
                failures.append(f"{instance}: {exc}")
                continue
            return _check_info(piped_payload_to_info(payload, video_id), video_id)
        if auth_error is not None:
            raise auth_error
        log_event(logging.ERROR, "probe_failed", provider=self.name, video_id=video_id, failures=failures)
        raise ProbeUnavailableError("All Piped instances failed", detail="; ".join(failures))


def make_probe(config: AppConfig):
    if config.probe_provider == "piped":
        return PipedProbe(config)
    if config.probe_provider == "ytdlp-cli":
        return YtDlpCliProbe(config)
    return YtDlpProbe(config)


async def run_probe(prober, video_id: str, timeout: float | None = None) -> dict:
    """Run a blocking ``prober.probe`` off the event loop with a deadline."""
    try:
        if timeout:
            with anyio.fail_after(timeout):
                return await anyio.to_thread.run_sync(prober.probe, video_id, abandon_on_cancel=True)
        return await anyio.to_thread.run_sync(prober.probe, video_id)
    except TimeoutError as exc:
        log_event(logging.ERROR, "probe_timeout", video_id=video_id, timeout=timeout)
        raise ProbeUnavailableError(f"probe timed out after {timeout}s") from exc
