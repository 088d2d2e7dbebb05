from __future__ import annotations

import json

import pytest

from engine import config as config_module
from engine.config import (
    DEFAULT_PIPED_INSTANCES,
    AppConfig,
    build_app_config,
    load_app_config,
    validate_config,
)


def test_defaults_without_file_or_environment() -> None:
    config = build_app_config({}, environ={})

    assert config.probe_provider == "ytdlp"
    assert config.max_height == 1080
    assert config.min_height == 480
    assert config.listing_cache_ttl_sec == 0
    assert config.piped_instances == DEFAULT_PIPED_INSTANCES
    assert config.cookie_args() == []
    assert config.cookie_source_label() is None


def test_environment_wins_over_file(tmp_path) -> None:
    cookies = tmp_path / "cookies.txt"
    cookies.write_text("# Netscape HTTP Cookie File\n")
    raw = {"max_height": 720, "probe_provider": "piped", "cookies_from_browser": "chrome"}
    environ = {
        "TUBEFETCH_MAX_HEIGHT": "1440",
        "YT_DLP_COOKIES_FILE": str(cookies),
        "FFMPEG_PATH": "/opt/ffmpeg/bin",
    }

    config = build_app_config(raw, environ=environ)

    assert config.max_height == 1440
    assert config.probe_provider == "piped"
    assert config.cookies_file == str(cookies)
    assert config.ffmpeg_location == "/opt/ffmpeg/bin"
    assert config.cookie_args() == ["--cookies", str(cookies)]
    assert config.cookie_opts() == {"cookiefile": str(cookies)}


def test_browser_cookies_with_profile() -> None:
    config = AppConfig(cookies_from_browser="firefox", browser_profile="default-release")

    assert config.cookie_args() == ["--cookies-from-browser", "firefox:default-release"]
    assert config.cookie_source_label() == "browser firefox:default-release"


def test_preferred_piped_instance_is_tried_first() -> None:
    config = build_app_config(
        {"piped_instances": ["piped.video", "piped.mha.fi"]},
        environ={"PIPED_INSTANCE": "https://piped.mha.fi/"},
    )

    assert config.piped_instances == ("piped.mha.fi", "piped.video")


def test_validate_config_collects_every_error() -> None:
    errors = validate_config(
        {
            "probe_provider": "invidious",
            "probe_timeout_sec": "soon",
            "max_height": -1,
            "piped_instances": "piped.video",
            "ytdlp_binary": 5,
        }
    )

    assert "probe_provider must be one of ytdlp, ytdlp-cli, piped" in errors
    assert "probe_timeout_sec must be a number" in errors
    assert "max_height must be >= 0" in errors
    assert "piped_instances must be a list of host names" in errors
    assert "ytdlp_binary must be a string" in errors


def test_min_height_above_max_height_is_rejected() -> None:
    assert validate_config({"max_height": 480, "min_height": 720}) == ["min_height must be <= max_height"]
    assert validate_config([]) == ["config must be a JSON object"]


def test_invalid_config_raises() -> None:
    with pytest.raises(ValueError):
        build_app_config({}, environ={"TUBEFETCH_PROBE_PROVIDER": "nope"})


def test_load_app_config_reads_json_file(tmp_path, monkeypatch) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"concurrent_fragments": 2, "listing_cache_ttl_sec": 30}))
    monkeypatch.setattr(config_module, "resolve_config_path", lambda override: str(config_path))

    config = load_app_config(environ={"TUBEFETCH_CONFIG": str(config_path)})

    assert config.concurrent_fragments == 2
    assert config.listing_cache_ttl_sec == 30


def test_load_app_config_rejects_broken_json(tmp_path, monkeypatch) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text("{not json")
    monkeypatch.setattr(config_module, "resolve_config_path", lambda override: str(config_path))

    with pytest.raises(ValueError):
        load_app_config(environ={})
