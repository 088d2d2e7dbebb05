"""Pick the audio track that accompanies a video-only stream.

Dubbed and audio-description tracks are never chosen over a clean track,
whatever their bitrate. Candidates are expected in bucket order (bitrate
descending), so the first match of a rule is also its best-sounding match.
"""

from __future__ import annotations

from typing import Callable, Iterable, Sequence

from media.formats import StreamFormat

_DEFAULT_POINTS = 500
_ORIGINAL_POINTS = 400
_LANGUAGE_POINTS = 200
_TRACK_LANGUAGE_POINTS = 180
_HAS_LANGUAGE_POINTS = 70
_DUB_PENALTY = 1200
_DESCRIPTION_PENALTY = 900


def _is_original(fmt: StreamFormat) -> bool:
    return bool(fmt.audio_track and fmt.audio_track.is_original)


def _is_default(fmt: StreamFormat) -> bool:
    return bool(fmt.audio_track and fmt.audio_track.is_default)


def _is_clean(fmt: StreamFormat) -> bool:
    return fmt.audio_track is None or fmt.audio_track.is_clean


def _language_match(fmt: StreamFormat, languages: Sequence[str]) -> bool:
    return bool(fmt.language) and fmt.language in languages


_Rule = Callable[[StreamFormat, Sequence[str]], bool]

SELECTION_RULES: tuple[tuple[str, _Rule], ...] = (
    ("language_original", lambda f, langs: _language_match(f, langs) and _is_original(f) and _is_clean(f)),
    ("language_default", lambda f, langs: _language_match(f, langs) and _is_default(f) and _is_clean(f)),
    ("language", lambda f, langs: _language_match(f, langs) and _is_clean(f)),
    ("original", lambda f, langs: _is_original(f) and _is_clean(f)),
    ("default", lambda f, langs: _is_default(f) and _is_clean(f)),
    ("clean", lambda f, langs: _is_clean(f)),
)


def target_languages(*candidates: str | None) -> list[str]:
    """Ordered, de-duplicated list of non-empty language tags."""
    languages = []
    for value in candidates:
        if value and value not in languages:
            languages.append(value)
    return languages


def pick_best_audio_with_rule(
    audio_only: Sequence[StreamFormat],
    languages: Iterable[str | None] = (),
) -> tuple[StreamFormat | None, str | None]:
    """Return ``(candidate, rule_name)``; ``(None, None)`` for an empty bucket."""
    if not audio_only:
        return None, None
    langs = target_languages(*languages)
    for name, rule in SELECTION_RULES:
        for fmt in audio_only:
            if rule(fmt, langs):
                return fmt, name
    best = max(audio_only, key=lambda f: f.effective_audio_bitrate)
    return best, "highest_bitrate"


def pick_best_audio(
    audio_only: Sequence[StreamFormat],
    languages: Iterable[str | None] = (),
) -> StreamFormat | None:
    candidate, _rule = pick_best_audio_with_rule(audio_only, languages)
    return candidate


def score_audio_candidate(fmt: StreamFormat, primary_language: str | None = None) -> float:
    """Numeric score giving the same ordering as the selection rules.

    Dub and description penalties dominate any realistic bitrate spread
    (bitrate contributes bitrate/1000, i.e. ~0-512 points).
    """
    track = fmt.audio_track
    score = 0.0
    if track is not None:
        if track.is_default:
            score += _DEFAULT_POINTS
        if track.is_original:
            score += _ORIGINAL_POINTS
        if track.is_dub:
            score -= _DUB_PENALTY
        if track.is_description:
            score -= _DESCRIPTION_PENALTY
    if primary_language:
        if fmt.language == primary_language:
            score += _LANGUAGE_POINTS
        elif track is not None and track.language == primary_language:
            score += _TRACK_LANGUAGE_POINTS
    if fmt.language:
        score += _HAS_LANGUAGE_POINTS
    score += fmt.effective_audio_bitrate / 1000
    return score


def rank_audio_candidates(
    audio_only: Iterable[StreamFormat],
    primary_language: str | None = None,
) -> list[tuple[float, StreamFormat]]:
    scored = [(score_audio_candidate(fmt, primary_language), fmt) for fmt in audio_only]
    scored.sort(key=lambda item: (-item[0], -item[1].effective_audio_bitrate))
    return scored
