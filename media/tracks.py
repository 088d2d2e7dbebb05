"""Audio-track role and language classification for raw format records.

Providers describe multi-language audio inconsistently: yt-dlp puts the role
into ``format_note`` ("English original (default)", "Spanish dubbed") and a
numeric ``language_preference``; Piped/InnerTube style payloads attach an
``audioTrack`` object or an id that points into an info-level ``audioTracks``
list. Everything is folded into one ``AudioTrackInfo`` here so ranking never
has to look at raw fields.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

_DUB_MARKERS = ("dub", "translation", "voice", "interpre")
_DESCRIPTION_MARKERS = ("description", "described", "commentary", "narration")
_ORIGINAL_MARKERS = ("original", "main")

# yt-dlp language_preference values for YouTube audio tracks
_ORIGINAL_LANGUAGE_PREFERENCE = 10
_DEFAULT_LANGUAGE_PREFERENCE = 5
_DESCRIPTION_LANGUAGE_PREFERENCE = -10
_DEFAULT_NOTE_MARKER = "(default)"


@dataclass(frozen=True)
class AudioTrackInfo:
    kind: str | None = None
    name: str | None = None
    display_name: str | None = None
    is_default: bool = False
    is_original: bool = False
    is_dub: bool = False
    is_description: bool = False
    language: str | None = None
    track_id: str | None = None

    @property
    def is_clean(self) -> bool:
        """Neither a dub nor a description track."""
        return not self.is_dub and not self.is_description

    def to_dict(self) -> dict:
        return {
            "id": self.track_id,
            "kind": self.kind,
            "name": self.name,
            "displayName": self.display_name,
            "isDefault": self.is_default,
            "isOriginal": self.is_original,
            "isDub": self.is_dub,
            "isDescription": self.is_description,
            "language": self.language,
        }


def normalize_language(value: Any) -> str | None:
    """Trim and upper-case a language value; lists are tried in order."""
    if value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
        return text.upper() if text else None
    if isinstance(value, (list, tuple)):
        for entry in value:
            normalized = normalize_language(entry)
            if normalized:
                return normalized
    return None


def _text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _flag(mapping: Mapping | None, *keys: str) -> bool:
    if not isinstance(mapping, Mapping):
        return False
    return any(bool(mapping.get(key)) for key in keys)


def _has_any(descriptor: str, markers) -> bool:
    return any(marker in descriptor for marker in markers)


def build_audio_track_index(info: Mapping | None) -> dict[str, AudioTrackInfo]:
    """Index an info-level ``audioTracks`` list by track id."""
    index: dict[str, AudioTrackInfo] = {}
    if not isinstance(info, Mapping):
        return index
    tracks = info.get("audioTracks") or info.get("audio_tracks")
    if not isinstance(tracks, list):
        return index

    for track in tracks:
        if not isinstance(track, Mapping):
            continue
        raw_id = (
            track.get("id")
            or track.get("audioTrackId")
            or track.get("audio_track_id")
            or track.get("format_id")
            or track.get("uid")
        )
        if not raw_id:
            continue
        kind = _text(track.get("kind")) or _text(track.get("type"))
        name = _text(track.get("name")) or _text(track.get("displayName"))
        lower_kind = (kind or "").lower()
        index[str(raw_id)] = AudioTrackInfo(
            kind=kind,
            name=name,
            display_name=_text(track.get("displayName")) or name,
            is_default=_flag(track, "default", "isDefault", "is_default"),
            is_original=_flag(track, "original", "isOriginal", "is_original") or "original" in lower_kind,
            is_dub=_has_any(lower_kind, _DUB_MARKERS),
            is_description=_has_any(lower_kind, _DESCRIPTION_MARKERS),
            language=normalize_language([track.get("language"), track.get("languageCode"), track.get("language_name")]),
            track_id=str(raw_id),
        )
    return index


def _raw_track(raw: Mapping) -> Mapping | str | None:
    for key in ("audioTrack", "audio_track"):
        value = raw.get(key)
        if isinstance(value, Mapping) or (isinstance(value, str) and value.strip()):
            return value
    return None


def classify_audio_track(raw: Mapping, track_index: Mapping[str, AudioTrackInfo] | None = None) -> AudioTrackInfo | None:
    """Classify the audio track carried by one raw format record.

    Returns ``None`` when the record carries no track information at all.
    Dub, description and original checks run independently; more than one
    flag may be set and ranking resolves the conflict. ``is_default`` is only
    ever taken from an explicit provider marker.
    """
    if not isinstance(raw, Mapping):
        return None
    track_index = track_index or {}
    raw_track = _raw_track(raw)
    track_obj = raw_track if isinstance(raw_track, Mapping) else None

    raw_id = None
    if track_obj is not None:
        raw_id = track_obj.get("id") or track_obj.get("audioTrackId")
    raw_id = raw_id or raw.get("audioTrackId") or raw.get("audio_track_id")
    if not raw_id and isinstance(raw_track, str):
        raw_id = raw_track
    mapped = track_index.get(str(raw_id)) if raw_id else None

    kind = None
    name = None
    display_name = None
    if track_obj is not None:
        kind = _text(track_obj.get("kind")) or _text(track_obj.get("type"))
        name = _text(track_obj.get("name"))
        display_name = _text(track_obj.get("displayName"))
    if mapped is not None:
        kind = kind or mapped.kind
        name = name or mapped.name
        display_name = display_name or mapped.display_name
    display_name = display_name or name or kind

    has_audio = _codec_present(raw.get("acodec")) or track_obj is not None or mapped is not None
    note = _text(raw.get("format_note")) if has_audio and not _codec_present(raw.get("vcodec")) else None

    descriptor = " ".join(part for part in (kind, name, display_name, note) if part).lower()

    language_preference = raw.get("language_preference")
    if not isinstance(language_preference, (int, float)) or isinstance(language_preference, bool):
        language_preference = None
    note_default = bool(note) and _DEFAULT_NOTE_MARKER in note.lower()

    is_default = (
        _flag(track_obj, "default", "is_default", "isDefault", "audio_is_default")
        or bool(mapped and mapped.is_default)
        or _flag(raw, "audio_is_default", "isDefaultAudioTrack")
        or note_default
        or language_preference == _DEFAULT_LANGUAGE_PREFERENCE
    )
    is_original = (
        is_default
        or language_preference == _ORIGINAL_LANGUAGE_PREFERENCE
        or _flag(track_obj, "original", "is_original", "isOriginal")
        or bool(mapped and mapped.is_original)
        or _has_any(descriptor, _ORIGINAL_MARKERS)
    )
    is_dub = _has_any(descriptor, _DUB_MARKERS) or bool(mapped and mapped.is_dub)
    is_description = (
        _has_any(descriptor, _DESCRIPTION_MARKERS)
        or bool(mapped and mapped.is_description)
        or language_preference == _DESCRIPTION_LANGUAGE_PREFERENCE
    )
    if not display_name and note and (is_dub or is_description):
        display_name = note

    language = normalize_language(
        [
            raw.get("audio_track_language"),
            raw.get("audioTrackLanguage"),
            track_obj.get("audioLocale") if track_obj is not None else None,
            track_obj.get("language") if track_obj is not None else None,
            mapped.language if mapped is not None else None,
        ]
    )

    if not any((raw_id, kind, name, display_name, descriptor, is_default, is_original, language)):
        return None

    return AudioTrackInfo(
        kind=kind,
        name=name,
        display_name=display_name,
        is_default=is_default,
        is_original=is_original,
        is_dub=is_dub,
        is_description=is_description,
        language=language,
        track_id=str(raw_id) if raw_id else (mapped.track_id if mapped is not None else None),
    )


def format_language(raw: Mapping, track: AudioTrackInfo | None = None) -> str | None:
    """Pick the language tag for a raw record, falling back to its track language."""
    return normalize_language(
        [
            raw.get("language_preference"),
            raw.get("language"),
            raw.get("language_alt"),
            track.language if track is not None else None,
        ]
    )


def track_tag(track: AudioTrackInfo | None) -> str | None:
    """Short tag shown in an audio label for non-original tracks."""
    if track is None:
        return None
    named = track.display_name or track.name or track.kind
    if track.is_dub:
        return named or "Dub"
    if track.is_description:
        return named or "Description"
    if not track.is_original and named:
        return named
    return None


def _codec_present(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip()) and value.strip().lower() != "none"
