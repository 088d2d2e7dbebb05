import os
from dataclasses import dataclass
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parent.parent

def _is_container_runtime():
    if os.path.exists("/.dockerenv"):
        return True
    return os.path.isdir("/data")


def _default_root_paths():
    if _is_container_runtime():
        return {
            "data": Path("/data"),
            "config": Path("/config"),
            "logs": Path("/logs"),
            "tokens": Path("/tokens"),
        }
    base = PROJECT_ROOT / "data"
    return {
        "data": base,
        "config": base / "config",
        "logs": base / "logs",
        "tokens": base / "tokens",
    }


_DEFAULTS = _default_root_paths()

DATA_DIR = Path(os.environ.get("TUBEFETCH_DATA_DIR", _DEFAULTS["data"])).resolve()
CONFIG_DIR = Path(os.environ.get("TUBEFETCH_CONFIG_DIR", _DEFAULTS["config"])).resolve()
LOG_DIR = Path(os.environ.get("TUBEFETCH_LOG_DIR", _DEFAULTS["logs"])).resolve()
TOKENS_DIR = Path(os.environ.get("TUBEFETCH_TOKENS_DIR", _DEFAULTS["tokens"])).resolve()
TEMP_DIR = Path(os.environ.get("TUBEFETCH_TEMP_DIR", DATA_DIR / "temp_downloads")).resolve()


@dataclass(frozen=True)
class EnginePaths:
    log_dir: str
    temp_downloads_dir: str
    tokens_dir: str
    config_dir: str


def ensure_dir(path):
    if path:
        os.makedirs(path, exist_ok=True)


def resolve_config_path(path):
    if not path:
        resolved = os.path.join(CONFIG_DIR, "config.json")
    elif os.path.isabs(path):
        resolved = os.path.abspath(path)
    else:
        resolved = os.path.abspath(os.path.join(CONFIG_DIR, path))
    if not _is_within_base(resolved, CONFIG_DIR):
        raise ValueError(f"Config path must be within CONFIG_DIR: {CONFIG_DIR}")
    return resolved


def _is_within_base(path, base_dir):
    real = os.path.realpath(path)
    base = os.path.realpath(base_dir)
    return os.path.commonpath([real, base]) == base


def resolve_dir(path, base_dir):
    if not path:
        return str(base_dir)
    if os.path.isabs(path):
        resolved = os.path.abspath(path)
    else:
        resolved = os.path.abspath(os.path.join(base_dir, path))
    if not _is_within_base(resolved, base_dir):
        # Cookie files and temp output stay under explicit base dirs.
        raise ValueError(f"Path must be within base directory: {base_dir}")
    return resolved


def build_engine_paths():
    for d in (TEMP_DIR, LOG_DIR, TOKENS_DIR, CONFIG_DIR):
        ensure_dir(d)

    return EnginePaths(
        log_dir=str(LOG_DIR),
        temp_downloads_dir=str(TEMP_DIR),
        tokens_dir=str(TOKENS_DIR),
        config_dir=str(CONFIG_DIR),
    )
