"""
Persona loading and flattening.

A persona is an arbitrary nested JSON object. For prompting it is
flattened depth-first into (label, value) pairs, where a label joins the
parent keys with spaces: {"work": {"title": "Consultant"}} becomes
("work title", "Consultant"). Lists of objects render as
"k: v, k: v" items separated by "; ".
"""

import json
import logging
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def _format_value(value: Any) -> str:
    if isinstance(value, list):
        items = []
        for item in value:
            if isinstance(item, dict):
                items.append(", ".join(f"{k}: {_format_value(v)}" for k, v in item.items()))
            else:
                items.append(_format_value(item))
        return "; ".join(items)
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


def flatten_persona(data: dict[str, Any], prefix: str = "") -> list[tuple[str, str]]:
    """Flatten a nested mapping into ordered (label, value) pairs."""
    pairs: list[tuple[str, str]] = []
    for key, value in data.items():
        label = f"{prefix} {key}" if prefix else str(key)
        if isinstance(value, dict):
            pairs.extend(flatten_persona(value, label))
        else:
            pairs.append((label, _format_value(value)))
    return pairs


def format_persona(data: dict[str, Any]) -> str:
    """One "label: value" line per flattened pair."""
    return "\n".join(f"{label}: {value}" for label, value in flatten_persona(data))


def load_persona(path: str | Path) -> dict[str, Any]:
    """
    Load a persona file.

    Files may wrap the persona in a top-level "persona" key.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the file is not a JSON object
    """
    path = Path(path)
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict) and isinstance(data.get("persona"), dict):
        data = data["persona"]
    if not isinstance(data, dict):
        raise ValueError(f"Persona file {path} must contain a JSON object")
    logger.info(f"Loaded persona from {path}")
    return data
