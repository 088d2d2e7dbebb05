"""Video reference parsing for pasted URLs and raw ids."""

from __future__ import annotations

import re
from typing import Optional
from urllib.parse import parse_qs, urlparse

from engine.errors import MalformedInputError

_VIDEO_ID_RE = re.compile(r"^[A-Za-z0-9_-]{11}$")
_PATH_PREFIXES = {"shorts", "embed", "live", "v"}


def is_video_id(value: str | None) -> bool:
    return bool(value) and bool(_VIDEO_ID_RE.match(value))


def extract_video_id(user_input: str | None) -> Optional[str]:
    """Return the 11-character video id in ``user_input`` or ``None``.

    Accepted shapes:
    - a raw id
    - ``youtu.be/<id>``
    - ``youtube.com/watch?v=<id>`` (any subdomain: www, m, music)
    - ``youtube.com/shorts|embed|live|v/<id>``
    No network calls are made.
    """
    raw = (user_input or "").strip()
    if not raw:
        return None
    if is_video_id(raw):
        return raw

    candidate = raw if "://" in raw else f"https://{raw}"
    parsed = urlparse(candidate)
    host = (parsed.netloc or "").lower().split(":", 1)[0]
    for prefix in ("www.", "m.", "music."):
        if host.startswith(prefix):
            host = host[len(prefix):]
    parts = [segment for segment in (parsed.path or "").split("/") if segment]

    if host == "youtu.be":
        if parts and is_video_id(_clean_identifier(parts[0])):
            return _clean_identifier(parts[0])
        return None

    if host == "youtube.com" or host.endswith(".youtube.com") or host == "youtube-nocookie.com":
        values = parse_qs(parsed.query).get("v")
        if values and is_video_id(_clean_identifier(values[0])):
            return _clean_identifier(values[0])
        if len(parts) >= 2 and parts[0].lower() in _PATH_PREFIXES and is_video_id(_clean_identifier(parts[1])):
            return _clean_identifier(parts[1])
    return None


def parse_video_id(user_input: str | None) -> str:
    video_id = extract_video_id(user_input)
    if not video_id:
        raise MalformedInputError("Provide a valid YouTube URL or video ID.")
    return video_id


def watch_url(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"


def _clean_identifier(value: str) -> str:
    return (value or "").split("?", 1)[0].split("&", 1)[0].strip().strip("/")
