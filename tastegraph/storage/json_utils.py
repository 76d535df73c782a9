"""JSON column helpers that never throw."""

import json
from typing import Any

from tastegraph.logging import get_logger

logger = get_logger(__name__)


def safe_json_dumps(data: Any, default: str = "{}") -> str:
    """Serialize data for a Text column, returning ``default`` on failure."""
    if data is None:
        return default

    try:
        return json.dumps(data, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError, OverflowError) as e:
        logger.warning(f"Failed to serialize JSON: {e}")
        return default


def safe_json_loads(text: str | None, default: dict | list | None = None) -> Any:
    """Parse a stored JSON column, returning ``default`` (``{}``) on failure."""
    if default is None:
        default = {}

    if not text:
        return default

    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError, ValueError) as e:
        logger.warning(f"Failed to parse stored JSON: {e}")
        return default


def load_str_list(text: str | None) -> list[str]:
    """Parse a stored JSON list of strings, dropping anything else."""
    value = safe_json_loads(text, default=[])
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]
