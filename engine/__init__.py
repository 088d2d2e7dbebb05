from .config import AppConfig, build_app_config, load_app_config, load_config, validate_config
from .paths import EnginePaths
from .runtime import get_runtime_info

__all__ = [
    "AppConfig",
    "EnginePaths",
    "build_app_config",
    "get_runtime_info",
    "load_app_config",
    "load_config",
    "validate_config",
]
