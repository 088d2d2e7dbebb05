"""Format-selector expressions for the transcode backend.

Provider format ids are only valid for the probe session that produced them.
A selector picked from an earlier listing is therefore checked against a fresh
probe; when it no longer resolves, a generic height-biased selector is used
instead of failing the download.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable

from engine.config import DEFAULT_MAX_HEIGHT, DEFAULT_MIN_HEIGHT
from engine.errors import StaleSelectorError

logger = logging.getLogger(__name__)

KIND_VIDEO = "video"
KIND_AUDIO = "audio"

_SELECTOR_RE = re.compile(r"^[A-Za-z0-9_-]+(\+[A-Za-z0-9_-]+)?$")
_ORDINAL_SUFFIX_RE = re.compile(r"^(\d+)-\d+$")
_PLACEHOLDER_RE = re.compile(r"undefined|null", re.IGNORECASE)

GENERIC_VIDEO_FORMAT = "bv*+ba/b"
GENERIC_AUDIO_FORMAT = "ba/bestaudio"

SOURCE_CLIENT = "client"
SOURCE_GENERIC = "generic"


@dataclass(frozen=True)
class SelectorValidation:
    ok: bool
    reason: str | None = None
    missing: tuple[str, ...] = field(default_factory=tuple)
    selector: str | None = None


@dataclass(frozen=True)
class GenericSelector:
    format: str
    sort: str | None = None


@dataclass(frozen=True)
class ResolvedSelector:
    format: str
    sort: str | None
    source: str
    stale: bool = False
    reason: str | None = None


def normalize_kind(value: str | None) -> str:
    return KIND_AUDIO if str(value or "").strip().lower() == KIND_AUDIO else KIND_VIDEO


def sanitize_requested_selector(value) -> str | None:
    """Clean a client-supplied selector; ``None`` when nothing usable remains.

    Component ids are kept as sent. A trailing ``-<n>`` may be a listing
    ordinal or part of the provider id itself (yt-dlp names duplicate itags
    ``251-0``, ``251-1``), so it is only resolved against a fresh probe.
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text or _PLACEHOLDER_RE.search(text):
        return None
    parts = [part.strip() for part in text.split("+")]
    if not all(parts):
        return None
    return "+".join(parts)


def looks_like_selector(value: str | None) -> bool:
    return bool(value) and bool(_SELECTOR_RE.match(value))


def selector_components(selector: str) -> list[str]:
    return [part for part in (selector or "").split("+") if part]


def build_selector(video_format_id: str, audio_format_id: str | None = None) -> str:
    if audio_format_id:
        return f"{video_format_id}+{audio_format_id}"
    return video_format_id


def resolve_component(part: str, available: set[str]) -> str | None:
    """``part`` as sent when the probe knows it, else its id without a listing ordinal."""
    if part in available:
        return part
    match = _ORDINAL_SUFFIX_RE.match(part)
    if match and match.group(1) in available:
        return match.group(1)
    return None


def validate_selector(selector: str | None, available_ids: Iterable[str] | None) -> SelectorValidation:
    """Check every component of ``selector`` against a fresh probe's format ids.

    Never raises; a missing probe result is reported as ``probe_failed``.
    On success ``selector`` holds the expression rebuilt from resolved ids.
    """
    if not looks_like_selector(selector):
        return SelectorValidation(ok=False, reason="malformed_selector")
    if available_ids is None:
        return SelectorValidation(ok=False, reason="probe_failed")
    available = {str(i) for i in available_ids}
    parts = selector_components(selector)
    resolved = [resolve_component(part, available) for part in parts]
    missing = tuple(part for part, found in zip(parts, resolved) if found is None)
    if missing:
        return SelectorValidation(ok=False, reason=f"format {missing[0]} not present", missing=missing)
    return SelectorValidation(ok=True, selector=build_selector(*resolved))


def require_fresh_selector(selector: str | None, available_ids: Iterable[str] | None) -> str:
    """Resolved selector expression; raises ``StaleSelectorError`` when it no longer resolves."""
    validation = validate_selector(selector, available_ids)
    if not validation.ok:
        raise StaleSelectorError(selector or "", list(validation.missing), reason=validation.reason)
    return validation.selector


def _height(value, default: int) -> int:
    try:
        number = int(float(value))
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default


def build_generic_selector(
    kind: str = KIND_VIDEO,
    max_height=DEFAULT_MAX_HEIGHT,
    min_height=DEFAULT_MIN_HEIGHT,
) -> GenericSelector:
    """Best video+audio (or progressive) biased towards ``max_height``.

    Both heights are preferences, not filters. The cap is a sort key
    (``-S res:<h>``) and the floor is tried as a first alternative, so a video
    that only exists outside the range still downloads.
    """
    if normalize_kind(kind) == KIND_AUDIO:
        return GenericSelector(format=GENERIC_AUDIO_FORMAT, sort=None)
    cap = _height(max_height, DEFAULT_MAX_HEIGHT)
    floor = _height(min_height, DEFAULT_MIN_HEIGHT)
    if floor > cap:
        floor = min(DEFAULT_MIN_HEIGHT, cap)
    return GenericSelector(
        format=f"bv*[height>={floor}]+ba/{GENERIC_VIDEO_FORMAT}",
        sort=f"res:{cap},fps,br",
    )


def resolve_download_selector(
    requested,
    *,
    kind: str = KIND_VIDEO,
    available_ids: Iterable[str] | None = None,
    max_height=DEFAULT_MAX_HEIGHT,
    min_height=DEFAULT_MIN_HEIGHT,
) -> ResolvedSelector:
    """Client selector when it still resolves, otherwise the generic selector."""
    generic = build_generic_selector(kind, max_height, min_height)
    selector = sanitize_requested_selector(requested)
    if not looks_like_selector(selector):
        return ResolvedSelector(format=generic.format, sort=generic.sort, source=SOURCE_GENERIC)

    try:
        fresh = require_fresh_selector(selector, available_ids)
    except StaleSelectorError as exc:
        logger.warning("Selector %s rejected (%s); falling back to %s", selector, exc.reason, generic.format)
        return ResolvedSelector(
            format=generic.format,
            sort=generic.sort,
            source=SOURCE_GENERIC,
            stale=True,
            reason=exc.reason,
        )
    return ResolvedSelector(format=fresh, sort=None, source=SOURCE_CLIENT)
