"""Static checks for workflow definitions before they are handed to the engine."""

from __future__ import annotations

from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Literal

from .errors import TransitionError
from .models import TERMINAL_STEPS
from .steps import PortRef
from .transitions import Arbitrary, Binary, MultiWay, Transition, parse_transition, static_targets

Severity = Literal["error", "warning"]


@dataclass(frozen=True)
class ValidationIssue:
    severity: Severity
    location: str
    code: str
    message: str


@dataclass
class ValidationReport:
    issues: list[ValidationIssue] = field(default_factory=list)

    @property
    def errors(self) -> list[ValidationIssue]:
        return [issue for issue in self.issues if issue.severity == "error"]

    @property
    def warnings(self) -> list[ValidationIssue]:
        return [issue for issue in self.issues if issue.severity == "warning"]

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def add(self, severity: Severity, location: str, code: str, message: str) -> None:
        self.issues.append(ValidationIssue(severity=severity, location=location, code=code, message=message))


@dataclass
class WorkflowDefinition:
    name: str
    start: str
    steps: Mapping[str, Any]


def _transition_of(step: Any) -> Transition | None:
    """The step's declared transition, or None when it only exposes an opaque ``next``."""
    transition = getattr(step, "transition", None)
    if transition is None:
        return None
    return parse_transition(transition)


def validate_workflow(definition: WorkflowDefinition) -> ValidationReport:
    report = ValidationReport()
    steps = definition.steps
    known = set(steps) | TERMINAL_STEPS

    if not steps:
        report.add("error", definition.name, "no_steps", "Workflow defines no steps")
    if definition.start not in steps:
        report.add("error", "start", "missing_start", f"Start step {definition.start!r} is not defined")

    transitions: dict[str, Transition | None] = {}
    for key, step in steps.items():
        location = f"steps.{key}"
        if key in TERMINAL_STEPS:
            report.add("error", location, "reserved_name", f"{key!r} is a reserved terminal marker")
        step_name = getattr(step, "name", None)
        if step_name != key:
            report.add("error", location, "name_mismatch", f"Step registered as {key!r} is named {step_name!r}")
        for attr in ("execute", "next"):
            if not callable(getattr(step, attr, None)):
                report.add("error", location, "missing_callable", f"Step does not expose a callable {attr}()")

        try:
            transition = _transition_of(step)
        except TransitionError as exc:
            report.add("error", f"{location}.transition", "bad_transition", str(exc))
            transition = None
        transitions[key] = transition

        if isinstance(transition, Binary) and not transition.condition.strip():
            report.add("error", f"{location}.transition", "empty_condition", "Binary transition has no condition")
        if isinstance(transition, MultiWay) and not transition.field.strip():
            report.add("error", f"{location}.transition", "empty_field", "Multi-way transition has no field")
        if transition is not None:
            for target in static_targets(transition):
                if target not in known:
                    report.add("error", f"{location}.transition", "unknown_target", f"Target {target!r} is not a defined step")

        for slot, ref in (getattr(step, "port_inputs", None) or {}).items():
            try:
                parsed = ref if isinstance(ref, PortRef) else PortRef.parse(str(ref))
            except ValueError as exc:
                report.add("error", f"{location}.port_inputs.{slot}", "bad_port", str(exc))
                continue
            if parsed.step not in steps:
                report.add(
                    "error",
                    f"{location}.port_inputs.{slot}",
                    "unknown_port_source",
                    f"Port input reads from undefined step {parsed.step!r}",
                )

    if definition.start in steps:
        _check_reachability(definition.start, steps, transitions, report)
    return report


def _check_reachability(
    start: str,
    steps: Mapping[str, Any],
    transitions: Mapping[str, Transition | None],
    report: ValidationReport,
) -> None:
    """Warn about steps that static analysis cannot reach from ``start``.

    Targets of arbitrary transitions, or of steps with an opaque ``next``, are not
    enumerable, so these findings are warnings only.
    """
    seen = {start}
    queue = deque([start])
    opaque = False
    while queue:
        current = queue.popleft()
        transition = transitions.get(current)
        if transition is None or isinstance(transition, Arbitrary):
            opaque = True
            continue
        for target in static_targets(transition):
            if target in steps and target not in seen:
                seen.add(target)
                queue.append(target)

    for key in steps:
        if key in seen:
            continue
        message = f"Step {key!r} is not reachable from {start!r}"
        if opaque:
            message += " (may be reached through a function transition)"
        report.add("warning", f"steps.{key}", "unreachable", message)
