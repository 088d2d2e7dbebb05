"""Canonical stream formats built from untrusted provider records.

All field-name ambiguity between providers is resolved here, once. Nothing
downstream reads a raw record.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from media.tracks import (
    AudioTrackInfo,
    build_audio_track_index,
    classify_audio_track,
    format_language,
    track_tag,
)

UNKNOWN_SIZE = "Unknown"
LABEL_SEPARATOR = " • "

_SIZE_UNITS = ("B", "KB", "MB", "GB", "TB")
_EXPLICIT_SIZE_KEYS = ("filesize", "contentLength", "content_length", "clen", "size")
_APPROX_SIZE_KEYS = ("filesize_approx", "approxFileSizeBytes", "approx_filesize")
_REFERENCE_KEYS = ("url", "manifest_url", "fragment_base_url")
_QUALITY_LABEL_RE = re.compile(r"^(\d{2,4})p(\d{2,3})?")
_PROVIDER_CONTAINERS = {
    "mpeg_4": "mp4",
    "mpeg-4": "mp4",
    "webm": "webm",
    "webma": "webm",
    "m4a": "m4a",
    "3gpp": "3gp",
}


@dataclass(frozen=True)
class StreamFormat:
    id: str
    format_id: str
    container: str
    has_video: bool
    has_audio: bool
    reference: str
    label: str
    audio_label: str
    height: int | None = None
    fps: float | None = None
    bitrate_bps: int | None = None
    audio_bitrate_bps: int | None = None
    size_bytes: int | None = None
    language: str | None = None
    audio_track: AudioTrackInfo | None = None

    @property
    def size_display(self) -> str:
        return format_bytes(self.size_bytes)

    @property
    def is_progressive(self) -> bool:
        return self.has_video and self.has_audio

    @property
    def is_video_only(self) -> bool:
        return self.has_video and not self.has_audio

    @property
    def is_audio_only(self) -> bool:
        return self.has_audio and not self.has_video

    @property
    def kind(self) -> str:
        if self.is_progressive:
            return "progressive"
        if self.is_video_only:
            return "video_only"
        return "audio_only"

    @property
    def effective_audio_bitrate(self) -> int:
        return self.audio_bitrate_bps or self.bitrate_bps or 0


def format_bytes(value: Any) -> str:
    """Human-readable size with 1024-based units; ``"Unknown"`` when unusable."""
    number = _positive_number(value)
    if number is None:
        return UNKNOWN_SIZE
    index = min(len(_SIZE_UNITS) - 1, int(math.floor(math.log(number) / math.log(1024))))
    scaled = number / (1024 ** index)
    if scaled >= 10:
        return f"{scaled:.0f} {_SIZE_UNITS[index]}"
    return f"{scaled:.1f} {_SIZE_UNITS[index]}"


def _positive_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number) or number <= 0:
        return None
    return number


def _first_positive(raw: Mapping, keys: Iterable[str]) -> float | None:
    for key in keys:
        number = _positive_number(raw.get(key))
        if number is not None:
            return number
    return None


def _has_media(raw: Mapping, codec_key: str, flag_key: str, mime_prefix: str) -> bool:
    codec = raw.get(codec_key)
    if isinstance(codec, str) and codec.strip():
        return codec.strip().lower() != "none"
    flag = raw.get(flag_key)
    if isinstance(flag, bool):
        return flag
    mime = raw.get("mimeType") or raw.get("mime_type")
    if isinstance(mime, str) and mime.strip():
        return mime.strip().lower().startswith(mime_prefix)
    return False


def _has_video(raw: Mapping) -> bool:
    # Piped video streams carry only a videoOnly flag
    if isinstance(raw.get("videoOnly"), bool) and not raw.get("vcodec") and "hasVideo" not in raw:
        return True
    return _has_media(raw, "vcodec", "hasVideo", "video/")


def _has_audio(raw: Mapping) -> bool:
    video_only = raw.get("videoOnly")
    if isinstance(video_only, bool) and not raw.get("acodec") and "hasAudio" not in raw:
        return not video_only
    return _has_media(raw, "acodec", "hasAudio", "audio/")


def _container(raw: Mapping, has_video: bool) -> str:
    for key in ("ext", "container"):
        value = raw.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip().lower()
    mime = raw.get("mimeType") or raw.get("mime_type")
    if isinstance(mime, str) and "/" in mime:
        subtype = mime.split(";", 1)[0].split("/", 1)[1].strip().lower()
        if subtype == "mp4" and not has_video:
            return "m4a"
        if subtype:
            return subtype
    provider_format = raw.get("format")
    if isinstance(provider_format, str):
        mapped = _PROVIDER_CONTAINERS.get(provider_format.strip().lower())
        if mapped:
            return mapped
    return "mp4"


def _quality_label(raw: Mapping) -> str | None:
    for key in ("qualityLabel", "quality_label", "quality", "label"):
        value = raw.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _int_or_none(value: Any) -> int | None:
    number = _positive_number(value)
    return int(number) if number is not None else None


def _height_and_fps(raw: Mapping) -> tuple[int | None, float | None]:
    height = _int_or_none(raw.get("height"))
    fps_number = _positive_number(raw.get("fps"))
    fps = None
    if fps_number is not None:
        fps = int(fps_number) if float(fps_number).is_integer() else fps_number
    if height is None or fps is None:
        match = _QUALITY_LABEL_RE.match(_quality_label(raw) or "")
        if match:
            height = height or int(match.group(1))
            if fps is None and match.group(2):
                fps = int(match.group(2))
    return height, fps


def _bitrates(raw: Mapping) -> tuple[int | None, int | None]:
    # tbr/abr are kbps (yt-dlp); bitrate/audioBitrate are bps (InnerTube/Piped)
    total_kbps = _positive_number(raw.get("tbr"))
    total = round(total_kbps * 1000) if total_kbps is not None else _int_or_none(raw.get("bitrate"))
    audio_kbps = _positive_number(raw.get("abr"))
    if audio_kbps is not None:
        audio = round(audio_kbps * 1000)
    else:
        audio = _int_or_none(raw.get("audioBitrate"))
    return total, audio


def _size_bytes(raw: Mapping) -> int | None:
    explicit = _first_positive(raw, _EXPLICIT_SIZE_KEYS)
    if explicit is not None:
        return int(explicit)
    approx = _first_positive(raw, _APPROX_SIZE_KEYS)
    if approx is not None:
        return int(approx)
    return None


def _reference(raw: Mapping) -> str | None:
    for key in _REFERENCE_KEYS:
        value = raw.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _format_id(raw: Mapping) -> str | None:
    for key in ("format_id", "itag", "formatId"):
        value = raw.get(key)
        if value is None or isinstance(value, bool):
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def video_label(raw: Mapping, height: int | None, fps: float | None, format_id: str | None) -> str:
    parts = []
    if height:
        text = f"{height}p"
        if fps and fps != 30:
            text += f"@{fps}"
        parts.append(text)
    else:
        resolution = raw.get("resolution")
        if isinstance(resolution, str) and resolution.strip() and resolution.strip() != "audio only":
            parts.append(resolution.strip())
        elif _quality_label(raw):
            parts.append(_quality_label(raw))
    dynamic_range = raw.get("dynamic_range")
    if dynamic_range and str(dynamic_range).strip().lower() != "sdr":
        parts.append(str(dynamic_range).strip().upper())
    note = raw.get("format_note")
    if isinstance(note, str) and note.strip() and note.strip() != "default":
        parts.append(note.strip())
    return LABEL_SEPARATOR.join(parts) or format_id or "Unknown quality"


def audio_label(raw: Mapping, language: str | None, track: AudioTrackInfo | None, audio_bitrate: int | None) -> str:
    quality = None
    abr = _positive_number(raw.get("abr"))
    if abr is not None:
        quality = f"{round(abr)} kbps"
    elif audio_bitrate:
        quality = f"{round(audio_bitrate / 1000)} kbps"
    else:
        asr = _positive_number(raw.get("asr") or raw.get("audioSampleRate"))
        if asr is not None:
            quality = f"{int(asr)} Hz"
    parts = [part for part in (language, track_tag(track), quality) if part]
    return LABEL_SEPARATOR.join(parts) or "Audio"


def normalize_format(
    raw: Mapping,
    ordinal: int,
    track_index: Mapping[str, AudioTrackInfo] | None = None,
) -> StreamFormat | None:
    """Map one raw record to a ``StreamFormat``.

    Returns ``None`` (silently) for records without a media reference and for
    records that carry neither video nor audio.
    """
    if not isinstance(raw, Mapping):
        return None
    reference = _reference(raw)
    if not reference:
        return None
    has_video = _has_video(raw)
    has_audio = _has_audio(raw)
    if not has_video and not has_audio:
        return None

    format_id = _format_id(raw) or str(ordinal)
    height, fps = _height_and_fps(raw)
    bitrate, audio_bitrate = _bitrates(raw)
    track = classify_audio_track(raw, track_index) if has_audio else None
    language = format_language(raw, track)

    return StreamFormat(
        id=f"{format_id}-{ordinal}",
        format_id=format_id,
        container=_container(raw, has_video),
        has_video=has_video,
        has_audio=has_audio,
        reference=reference,
        label=video_label(raw, height, fps, format_id),
        audio_label=audio_label(raw, language, track, audio_bitrate),
        height=height,
        fps=fps,
        bitrate_bps=bitrate,
        audio_bitrate_bps=audio_bitrate,
        size_bytes=_size_bytes(raw),
        language=language,
        audio_track=track,
    )


def normalize_formats(info: Mapping | None) -> list[StreamFormat]:
    """Normalize every record in ``info["formats"]``, dropping unusable ones."""
    if not isinstance(info, Mapping):
        return []
    raw_formats = info.get("formats")
    if not isinstance(raw_formats, list):
        return []
    track_index = build_audio_track_index(info)
    normalized = []
    for ordinal, raw in enumerate(raw_formats):
        fmt = normalize_format(raw, ordinal, track_index)
        if fmt is not None:
            normalized.append(fmt)
    return normalized


def format_ids(info: Mapping | None) -> set[str]:
    """Provider format ids present in a probe result, including unusable records."""
    if not isinstance(info, Mapping):
        return set()
    ids = set()
    for raw in info.get("formats") or []:
        if isinstance(raw, Mapping):
            format_id = _format_id(raw)
            if format_id:
                ids.add(format_id)
    return ids
