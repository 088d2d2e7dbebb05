import json
import logging
import math
from datetime import date, datetime
from enum import Enum
from pathlib import Path


def safe_json(value):
    """Return a copy of ``value`` that ``json.dumps(..., allow_nan=False)`` accepts."""
    if value is None or isinstance(value, (bool, str, int)):
        return value
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return None
        return value
    if isinstance(value, dict):
        return {str(k): safe_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = sorted(value, key=str) if isinstance(value, (set, frozenset)) else value
        return [safe_json(v) for v in items]
    if isinstance(value, Enum):
        return safe_json(value.value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return safe_json(to_dict())
    return str(value)


def safe_json_dumps(value, **kwargs):
    kwargs.setdefault("ensure_ascii", False)
    return json.dumps(safe_json(value), allow_nan=False, **kwargs)


def json_sanity_check():
    sample = {"nan": float("nan"), "inf": float("inf"), "path": Path("/tmp"), "tags": {"b", "a"}}
    try:
        safe_json_dumps(sample)
    except (TypeError, ValueError):
        logging.exception("JSON sanitizer self-check failed")
        return False
    return True
