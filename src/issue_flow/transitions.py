"""Transition shapes that pick the next step from the post-merge workflow state.

Four shapes are supported:

``Fixed``
    Always the same step.
``Binary``
    Truthiness of a state field picks one of two steps.
``MultiWay``
    The stringified value of a state field is looked up in a case map.
``Arbitrary``
    Any callable of the state.

Definitions written as plain data are converted with :func:`parse_transition`, which
rejects anything it does not recognize instead of falling back to a terminal step.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Union

from .errors import TransitionError
from .models import END, WorkflowState
from .utils import MISSING, get_nested_value


def resolve_state_path(state: WorkflowState, path: str) -> Any:
    """Resolve ``path`` against the state.

    Paths starting with a state field name (``context.approved``, ``status``) resolve
    from the state root; any other path is looked up inside ``context``. Missing values
    resolve to None.
    """
    head = path.split(".", 1)[0]
    if head in WorkflowState.model_fields:
        value = get_nested_value(state.model_dump(mode="json"), path, MISSING)
    else:
        value = get_nested_value(state.context, path, MISSING)
    return None if value is MISSING else value


def stringify_case_value(value: Any) -> str:
    """Render a field value as a case key.

    Strings are used as is. Integral floats drop their fraction so ``2.0`` and ``2``
    both match case ``"2"``. Missing fields and None both become ``"null"``.
    """
    if isinstance(value, str):
        return value
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return json.dumps(value, default=str)


@dataclass(frozen=True)
class Fixed:
    target: str

    def resolve(self, state: WorkflowState) -> str:
        return self.target


@dataclass(frozen=True)
class Binary:
    condition: str
    then_target: str
    else_target: str

    def resolve(self, state: WorkflowState) -> str:
        return self.then_target if resolve_state_path(state, self.condition) else self.else_target


@dataclass(frozen=True)
class MultiWay:
    field: str
    cases: Mapping[str, str] = field(default_factory=dict)
    default: str = END

    def resolve(self, state: WorkflowState) -> str:
        key = stringify_case_value(resolve_state_path(state, self.field))
        return self.cases.get(key, self.default)


@dataclass(frozen=True)
class Arbitrary:
    fn: Callable[[WorkflowState], str]

    def resolve(self, state: WorkflowState) -> str:
        target = self.fn(state)
        if not isinstance(target, str) or not target:
            raise TransitionError(f"Transition function returned {target!r}; expected a step name")
        return target


Transition = Union[Fixed, Binary, MultiWay, Arbitrary]
TRANSITION_TYPES = (Fixed, Binary, MultiWay, Arbitrary)


def parse_transition(value: Any) -> Transition:
    """Convert a transition definition into one of the four shapes.

    Accepted forms: a transition instance, a step name, a callable, a mapping with
    ``if``/``then``/``else`` keys, or a mapping with ``match``/``cases`` and an optional
    ``default``.

    Raises:
        TransitionError: For any other shape, including None and empty names.
    """
    if isinstance(value, TRANSITION_TYPES):
        return value
    if isinstance(value, str):
        if not value.strip():
            raise TransitionError("Transition target must be a non-empty step name")
        return Fixed(value)
    if callable(value):
        return Arbitrary(value)
    if isinstance(value, Mapping):
        keys = set(value)
        if keys == {"if", "then", "else"}:
            condition, then_target, else_target = value["if"], value["then"], value["else"]
            if not all(isinstance(item, str) and item for item in (condition, then_target, else_target)):
                raise TransitionError(f"Binary transition needs non-empty string values: {dict(value)!r}")
            return Binary(condition=condition, then_target=then_target, else_target=else_target)
        if {"match", "cases"} <= keys <= {"match", "cases", "default"}:
            cases = value["cases"]
            if not isinstance(value["match"], str) or not value["match"]:
                raise TransitionError(f"Multi-way transition needs a field name: {dict(value)!r}")
            if not isinstance(cases, Mapping) or not all(isinstance(target, str) for target in cases.values()):
                raise TransitionError(f"Multi-way transition cases must map strings to step names: {cases!r}")
            default = value.get("default", END)
            if not isinstance(default, str) or not default:
                raise TransitionError(f"Multi-way default must be a step name, got {default!r}")
            return MultiWay(field=value["match"], cases={str(k): v for k, v in cases.items()}, default=default)
    raise TransitionError(f"Unrecognized transition shape: {value!r}")


def static_targets(transition: Transition) -> list[str]:
    """Step names a transition can reach, as far as they are statically known."""
    if isinstance(transition, Fixed):
        return [transition.target]
    if isinstance(transition, Binary):
        return [transition.then_target, transition.else_target]
    if isinstance(transition, MultiWay):
        return [*dict.fromkeys([*transition.cases.values(), transition.default])]
    return []
