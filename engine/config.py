"""Process-wide configuration, built once at startup and injected where needed."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, replace

from engine.paths import TOKENS_DIR, resolve_config_path, resolve_dir

logger = logging.getLogger(__name__)

PROBE_PROVIDERS = ("ytdlp", "ytdlp-cli", "piped")
DEFAULT_PIPED_INSTANCES = (
    "piped.video",
    "piped.mha.fi",
    "piped.lunar.icu",
    "watch.leptons.xyz",
)
DEFAULT_MAX_HEIGHT = 1080
DEFAULT_MIN_HEIGHT = 480

# config key -> environment variables, first non-empty wins
_ENV_KEYS = {
    "cookies_file": ("YT_DLP_COOKIES_FILE", "YTDLP_COOKIES_FILE"),
    "cookies_from_browser": ("YT_DLP_COOKIES_FROM_BROWSER", "YTDLP_COOKIES_FROM_BROWSER"),
    "browser_profile": ("YT_DLP_BROWSER_PROFILE", "YTDLP_BROWSER_PROFILE"),
    "ffmpeg_location": ("FFMPEG_PATH",),
    "ytdlp_binary": ("TUBEFETCH_YTDLP_BIN",),
    "probe_provider": ("TUBEFETCH_PROBE_PROVIDER",),
    "piped_instance": ("PIPED_INSTANCE",),
    "probe_timeout_sec": ("TUBEFETCH_PROBE_TIMEOUT",),
    "transcode_timeout_sec": ("TUBEFETCH_TRANSCODE_TIMEOUT",),
    "max_height": ("TUBEFETCH_MAX_HEIGHT",),
    "min_height": ("TUBEFETCH_MIN_HEIGHT",),
    "concurrent_fragments": ("TUBEFETCH_CONCURRENT_FRAGMENTS",),
    "listing_cache_ttl_sec": ("TUBEFETCH_LISTING_CACHE_TTL",),
}

_NUMERIC_KEYS = {
    "probe_timeout_sec": float,
    "transcode_timeout_sec": float,
    "max_height": int,
    "min_height": int,
    "concurrent_fragments": int,
    "listing_cache_ttl_sec": int,
}


@dataclass(frozen=True)
class AppConfig:
    ytdlp_binary: str = "yt-dlp"
    ffmpeg_location: str | None = None
    cookies_file: str | None = None
    cookies_from_browser: str | None = None
    browser_profile: str | None = None
    probe_provider: str = "ytdlp"
    piped_instances: tuple[str, ...] = DEFAULT_PIPED_INSTANCES
    probe_timeout_sec: float = 60.0
    transcode_timeout_sec: float = 900.0
    max_height: int = DEFAULT_MAX_HEIGHT
    min_height: int = DEFAULT_MIN_HEIGHT
    concurrent_fragments: int = 8
    listing_cache_ttl_sec: int = 0
    temp_root: str | None = None
    extra_headers: dict = field(
        default_factory=lambda: {
            "referer": "https://www.youtube.com/",
            "user-agent": "Mozilla/5.0",
        }
    )

    def cookie_args(self) -> list[str]:
        """yt-dlp CLI arguments for the configured cookie source; a file wins over a browser."""
        if self.cookies_file:
            return ["--cookies", self.cookies_file]
        if self.cookies_from_browser:
            spec = self.cookies_from_browser
            if self.browser_profile:
                spec = f"{spec}:{self.browser_profile}"
            return ["--cookies-from-browser", spec]
        return []

    def cookie_opts(self) -> dict:
        """Same cookie source expressed as ``YoutubeDL`` options."""
        if self.cookies_file:
            return {"cookiefile": self.cookies_file}
        if self.cookies_from_browser:
            profile = self.browser_profile or None
            return {"cookiesfrombrowser": (self.cookies_from_browser, profile, None, None)}
        return {}

    def cookie_source_label(self) -> str | None:
        if self.cookies_file:
            return f"file {self.cookies_file}"
        if self.cookies_from_browser:
            if self.browser_profile:
                return f"browser {self.cookies_from_browser}:{self.browser_profile}"
            return f"browser {self.cookies_from_browser}"
        return None

    def with_overrides(self, **overrides) -> "AppConfig":
        return replace(self, **overrides)


def load_config(path):
    with open(path, "r") as f:
        return json.load(f)


def validate_config(config):
    errors = []
    if not isinstance(config, dict):
        return ["config must be a JSON object"]

    provider = config.get("probe_provider")
    if provider is not None and provider not in PROBE_PROVIDERS:
        errors.append(f"probe_provider must be one of {', '.join(PROBE_PROVIDERS)}")

    for key, kind in _NUMERIC_KEYS.items():
        value = config.get(key)
        if value is None:
            continue
        try:
            number = kind(value)
        except (TypeError, ValueError):
            errors.append(f"{key} must be a number")
            continue
        if number < 0:
            errors.append(f"{key} must be >= 0")

    max_height = config.get("max_height")
    min_height = config.get("min_height")
    if not errors and max_height is not None and min_height is not None:
        if int(min_height) > int(max_height):
            errors.append("min_height must be <= max_height")

    instances = config.get("piped_instances")
    if instances is not None:
        if not isinstance(instances, list) or not all(isinstance(i, str) and i.strip() for i in instances):
            errors.append("piped_instances must be a list of host names")

    for key in ("cookies_file", "cookies_from_browser", "browser_profile", "ffmpeg_location", "ytdlp_binary"):
        value = config.get(key)
        if value is not None and not isinstance(value, str):
            errors.append(f"{key} must be a string")

    return errors


def _env_overrides(environ):
    overrides = {}
    for key, names in _ENV_KEYS.items():
        for name in names:
            value = environ.get(name)
            if value and value.strip():
                overrides[key] = value.strip()
                break
    return overrides


def _sanitize_instance(value):
    if not value:
        return value
    text = str(value).strip()
    for prefix in ("https://", "http://"):
        if text.startswith(prefix):
            text = text[len(prefix):]
    return text.rstrip("/")


def _resolve_cookie_path(value):
    if not value:
        return None
    if os.path.isabs(value):
        resolved = os.path.abspath(value)
    else:
        try:
            resolved = resolve_dir(value, TOKENS_DIR)
        except ValueError as exc:
            logging.error("Invalid yt-dlp cookies path: %s", exc)
            return None
    if not os.path.exists(resolved):
        logging.warning("yt-dlp cookies file not found: %s", resolved)
    return resolved


def build_app_config(raw: dict | None = None, environ=None) -> AppConfig:
    """Merge a JSON config dict with environment overrides into an ``AppConfig``.

    Environment values win over the file. Raises ``ValueError`` listing every
    validation error when the merged result is unusable.
    """
    environ = os.environ if environ is None else environ
    merged = dict(raw or {})
    merged.update(_env_overrides(environ))

    errors = validate_config(merged)
    if errors:
        raise ValueError("; ".join(errors))

    kwargs = {}
    for key in ("ytdlp_binary", "ffmpeg_location", "cookies_from_browser", "browser_profile", "probe_provider"):
        if merged.get(key):
            kwargs[key] = str(merged[key]).strip()
    if "probe_provider" in kwargs:
        kwargs["probe_provider"] = kwargs["probe_provider"].lower()
    for key, kind in _NUMERIC_KEYS.items():
        if merged.get(key) is not None:
            kwargs[key] = kind(merged[key])
    kwargs["cookies_file"] = _resolve_cookie_path(merged.get("cookies_file"))
    if merged.get("temp_root"):
        kwargs["temp_root"] = str(merged["temp_root"])

    instances = [_sanitize_instance(i) for i in (merged.get("piped_instances") or DEFAULT_PIPED_INSTANCES)]
    preferred = _sanitize_instance(merged.get("piped_instance"))
    if preferred:
        instances = [preferred] + [i for i in instances if i != preferred]
    kwargs["piped_instances"] = tuple(instances)

    return AppConfig(**kwargs)


def load_app_config(environ=None) -> AppConfig:
    environ = os.environ if environ is None else environ
    raw = {}
    override = environ.get("TUBEFETCH_CONFIG")
    config_path = resolve_config_path(override)
    if os.path.exists(config_path):
        try:
            raw = load_config(config_path)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid JSON in config {config_path}: {exc}") from exc
        logger.info("Loaded config from %s", config_path)
    elif override:
        raise ValueError(f"Config not found: {config_path}")
    config = build_app_config(raw, environ)
    label = config.cookie_source_label()
    if label:
        logger.info("yt-dlp cookies configured from %s", label)
    else:
        logger.warning("yt-dlp cookies not configured; some videos may require login.")
    return config
