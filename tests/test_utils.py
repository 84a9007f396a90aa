from __future__ import annotations

from datetime import UTC, datetime

import pytest

from issue_flow.canonical import to_canonical_json, to_jsonable
from issue_flow.models import PriorityLevel
from issue_flow.utils import get_nested_value, interpolate


def test_canonical_json() -> None:
    left = {"b": 2, "a": 1, "nested": {"z": 9, "y": [3, 2, 1]}}
    right = {"nested": {"y": [3, 2, 1], "z": 9}, "a": 1, "b": 2}
    assert to_canonical_json(left) == to_canonical_json(right)
    assert to_canonical_json(left) == '{"a":1,"b":2,"nested":{"y":[3,2,1],"z":9}}'


def test_to_jsonable_handles_enums_and_timestamps() -> None:
    stamp = datetime(2024, 1, 1, tzinfo=UTC)
    assert to_jsonable({"p": PriorityLevel.HIGH, "at": stamp}) == {"p": "high", "at": "2024-01-01T00:00:00+00:00"}
    with pytest.raises(TypeError):
        to_jsonable({"raw": b"bytes"})


def test_get_nested_value() -> None:
    data = {"user": {"roles": ["admin", "dev"], "name": None}}
    assert get_nested_value(data, "user.roles.1") == "dev"
    assert get_nested_value(data, "user.name", "fallback") is None
    assert get_nested_value(data, "user.missing", "fallback") == "fallback"
    assert get_nested_value(data, "user.roles.9") is None


def test_interpolate_formats_values_and_keeps_unknown_placeholders() -> None:
    values = {"name": "flow", "count": 3, "ok": True, "inputs": {"plan": ["a"]}}
    rendered = interpolate("{{ name }}:{{count}}:{{ok}}:{{missing}}", values)
    assert rendered == "flow:3:true:{{missing}}"
    assert interpolate("{{inputs.plan}}", values) == '[\n  "a"\n]'
