"""Turn classified stream buckets into download-ready options."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from engine.errors import NoCompatibleAudioError
from media.audio_ranking import pick_best_audio_with_rule, rank_audio_candidates
from media.buckets import StreamBuckets, classify_formats
from media.formats import LABEL_SEPARATOR, StreamFormat, format_bytes, normalize_formats
from media.selector import build_selector
from media.tracks import normalize_language, track_tag

logger = logging.getLogger(__name__)

VARIES_SIZE = "Varies"

OPTION_PROGRESSIVE = "progressive"
OPTION_MERGED = "merged"
OPTION_AUDIO = "audio"


@dataclass(frozen=True)
class PairedOption:
    id: str
    kind: str
    label: str
    selector_expression: str
    output_container: str
    requires_merge: bool
    video: StreamFormat | None = None
    audio: StreamFormat | None = None
    combined_size_bytes: int | None = None
    audio_rule: str | None = None

    @property
    def primary(self) -> StreamFormat:
        return self.video if self.video is not None else self.audio

    @property
    def size_bytes(self) -> int | None:
        if self.kind == OPTION_MERGED:
            return self.combined_size_bytes
        return self.primary.size_bytes

    @property
    def size_display(self) -> str:
        if self.kind == OPTION_MERGED:
            if self.combined_size_bytes is None:
                return VARIES_SIZE
            return format_bytes(self.combined_size_bytes)
        return self.primary.size_display

    @property
    def language(self) -> str | None:
        if self.audio is not None:
            return self.audio.language
        return self.primary.language

    @property
    def audio_track(self):
        if self.audio is not None:
            return self.audio.audio_track
        return self.primary.audio_track

    def to_view(self) -> dict:
        video = self.video
        audio = self.audio
        if self.kind == OPTION_MERGED:
            bitrate = video.bitrate_bps
            audio_bitrate = audio.audio_bitrate_bps or audio.bitrate_bps
        else:
            bitrate = self.primary.bitrate_bps
            audio_bitrate = self.primary.audio_bitrate_bps
        track = self.audio_track
        return {
            "id": self.id,
            "label": self.label,
            "audioLabel": audio.audio_label if audio is not None else None,
            "size": self.size_display,
            "bitrate": bitrate,
            "audioBitrate": audio_bitrate,
            "fps": video.fps if video is not None else None,
            "height": video.height if video is not None else None,
            "language": self.language,
            "extension": self.output_container,
            "downloadFormat": self.selector_expression,
            "videoFormatId": video.format_id if video is not None else None,
            "audioFormatId": audio.format_id if audio is not None else None,
            "requiresMerge": self.requires_merge,
            "audioTrack": track.to_dict() if track is not None else None,
        }


def merged_container(video: StreamFormat, audio: StreamFormat) -> str:
    """webm only when both sides are webm; anything mixed is bridged into mp4."""
    if video.container == "webm" and audio.container == "webm":
        return "webm"
    return "mp4"


def combined_size(video: StreamFormat, audio: StreamFormat) -> int | None:
    if video.size_bytes is None or audio.size_bytes is None:
        return None
    return video.size_bytes + audio.size_bytes


def progressive_option(fmt: StreamFormat) -> PairedOption:
    return PairedOption(
        id=fmt.id,
        kind=OPTION_PROGRESSIVE,
        label=fmt.label,
        selector_expression=fmt.format_id,
        output_container=fmt.container,
        requires_merge=False,
        video=fmt,
    )


def audio_option(fmt: StreamFormat) -> PairedOption:
    return PairedOption(
        id=fmt.id,
        kind=OPTION_AUDIO,
        label=fmt.audio_label,
        selector_expression=fmt.format_id,
        output_container=fmt.container,
        requires_merge=False,
        audio=fmt,
    )


def merged_option(video: StreamFormat, audio: StreamFormat, rule: str | None = None) -> PairedOption:
    # a non-original partner track is named in the option label
    tag = track_tag(audio.audio_track)
    return PairedOption(
        id=f"{video.id}-merged-{audio.id}",
        kind=OPTION_MERGED,
        label=LABEL_SEPARATOR.join([video.label, tag]) if tag else video.label,
        selector_expression=build_selector(video.format_id, audio.format_id),
        output_container=merged_container(video, audio),
        requires_merge=True,
        video=video,
        audio=audio,
        combined_size_bytes=combined_size(video, audio),
        audio_rule=rule,
    )


def pick_audio_partner(
    video: StreamFormat,
    audio_only,
    primary_language: str | None = None,
) -> tuple[StreamFormat, str]:
    """Best audio for ``video``; raises ``NoCompatibleAudioError`` for an empty bucket."""
    audio, rule = pick_best_audio_with_rule(audio_only, (video.language, primary_language))
    if audio is None:
        raise NoCompatibleAudioError(f"no audio partner for video format {video.format_id}")
    if logger.isEnabledFor(logging.DEBUG):
        ranked = rank_audio_candidates(audio_only, video.language or primary_language)
        logger.debug(
            "Audio for %s: %s by rule %s; scores %s",
            video.format_id,
            audio.format_id,
            rule,
            ", ".join(f"{fmt.format_id}={score:.1f}" for score, fmt in ranked),
        )
    return audio, rule


def pair_video_streams(buckets: StreamBuckets, primary_language: str | None = None) -> list[PairedOption]:
    """One merged option per video-only stream that has an audio partner.

    Video-only streams are skipped (not errored) when the audio bucket is empty.
    """
    paired = []
    for video in buckets.video_only:
        try:
            audio, rule = pick_audio_partner(video, buckets.audio_only, primary_language)
        except NoCompatibleAudioError as exc:
            logger.debug("%s; option omitted", exc)
            continue
        paired.append(merged_option(video, audio, rule))
    return paired


def build_options(buckets: StreamBuckets, primary_language: str | None = None) -> tuple[list[PairedOption], list[PairedOption]]:
    video_options = [progressive_option(fmt) for fmt in buckets.progressive]
    video_options.extend(pair_video_streams(buckets, primary_language))
    audio_options = [audio_option(fmt) for fmt in buckets.audio_only]
    return video_options, audio_options


def primary_language(info: Mapping | None) -> str | None:
    if not isinstance(info, Mapping):
        return None
    return normalize_language([info.get("original_language"), info.get("language"), info.get("language_preference")])


def thumbnail_url(info: Mapping) -> str:
    thumbs = info.get("thumbnails")
    if isinstance(thumbs, list):
        for thumb in reversed(thumbs):
            if isinstance(thumb, Mapping) and thumb.get("url"):
                return str(thumb["url"])
    return str(info.get("thumbnail") or info.get("thumbnailUrl") or "")


def _duration(info: Mapping) -> Any:
    value = info.get("duration")
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    return None


def build_format_listing(info: Mapping, video_id: str) -> dict:
    """Probe result -> the JSON document served by the format-listing endpoint."""
    formats = normalize_formats(info)
    buckets = classify_formats(formats)
    video_options, audio_options = build_options(buckets, primary_language(info))
    return {
        "id": video_id,
        "title": info.get("title"),
        "thumbnailUrl": thumbnail_url(info),
        "channel": info.get("uploader") or info.get("channel"),
        "durationSeconds": _duration(info),
        "videoStreams": [option.to_view() for option in video_options],
        "audioStreams": [option.to_view() for option in audio_options],
    }
