from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any

import rfc8785
from pydantic import BaseModel

_JSON_SCALARS = (bool, int, float, str, type(None))


def to_jsonable(value: Any) -> Any:
    """Convert models, enums and timestamps into plain JSON values.

    Raises:
        TypeError: If ``value`` holds something with no JSON form (bytes, sets, objects).
    """
    if isinstance(value, Enum):
        return to_jsonable(value.value)
    if isinstance(value, _JSON_SCALARS):
        return value
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, dict):
        return {str(key): to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Cannot serialize type {type(value).__name__} to JSON")


def to_canonical_json(value: Any) -> str:
    """Serialize ``value`` as compact RFC 8785 JSON (sorted keys, no whitespace).

    Used wherever a single-line, byte-stable document is needed, such as the
    ``matrix=<json>`` line handed to the CI runner.
    """
    return rfc8785.dumps(to_jsonable(value)).decode("utf-8")
