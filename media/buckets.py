from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from media.formats import StreamFormat


@dataclass
class StreamBuckets:
    progressive: list[StreamFormat] = field(default_factory=list)
    video_only: list[StreamFormat] = field(default_factory=list)
    audio_only: list[StreamFormat] = field(default_factory=list)

    def __iter__(self):
        yield from self.progressive
        yield from self.video_only
        yield from self.audio_only

    def __len__(self):
        return len(self.progressive) + len(self.video_only) + len(self.audio_only)


def dedupe_key(fmt: StreamFormat) -> tuple[str, str]:
    return fmt.format_id, fmt.reference


def dedupe_formats(formats: Iterable[StreamFormat]) -> list[StreamFormat]:
    """Drop exact duplicates (same format id and same reference), keeping the first."""
    seen = set()
    unique = []
    for fmt in formats:
        key = dedupe_key(fmt)
        if key in seen:
            continue
        seen.add(key)
        unique.append(fmt)
    return unique


def video_sort_key(fmt: StreamFormat):
    return (-(fmt.height or 0), -(fmt.fps or 0), -(fmt.bitrate_bps or 0))


def audio_sort_key(fmt: StreamFormat):
    return -fmt.effective_audio_bitrate


def classify_formats(formats: Iterable[StreamFormat]) -> StreamBuckets:
    """Partition normalized formats into progressive / video-only / audio-only buckets.

    Sorting is stable, so equal keys keep probe order and running this twice
    over the same input gives identical buckets.
    """
    buckets = StreamBuckets()
    for fmt in dedupe_formats(formats):
        if fmt.is_progressive:
            buckets.progressive.append(fmt)
        elif fmt.is_video_only:
            buckets.video_only.append(fmt)
        elif fmt.is_audio_only:
            buckets.audio_only.append(fmt)
    buckets.progressive.sort(key=video_sort_key)
    buckets.video_only.sort(key=video_sort_key)
    buckets.audio_only.sort(key=audio_sort_key)
    return buckets
