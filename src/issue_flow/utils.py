from __future__ import annotations

import json
import re
from collections.abc import Mapping
from typing import Any

_PLACEHOLDER_RE = re.compile(r"\{\{([^}]+)\}\}")

MISSING = object()


def get_nested_value(data: Any, path: str, default: Any = None) -> Any:
    """Resolve a dotted path (``user.profile.name``) through nested mappings and sequences."""
    current = data
    for key in path.split("."):
        if isinstance(current, Mapping):
            if key not in current:
                return default
            current = current[key]
        elif isinstance(current, (list, tuple)) and key.isdigit():
            index = int(key)
            if index >= len(current):
                return default
            current = current[index]
        else:
            return default
    return current


def format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value, indent=2, default=str)


def interpolate(template: str, values: Mapping[str, Any]) -> str:
    """Replace ``{{path}}`` placeholders with values looked up in ``values``.

    Unknown placeholders are left in place so a missing value is visible in the output.
    """

    def _replace(match: re.Match[str]) -> str:
        value = get_nested_value(values, match.group(1).strip(), MISSING)
        if value is MISSING:
            return match.group(0)
        return format_value(value)

    return _PLACEHOLDER_RE.sub(_replace, template)
