from __future__ import annotations

import functools
import logging
import time
from collections.abc import Callable, Iterable, Mapping, MutableMapping
from dataclasses import dataclass, field
from typing import Any, TypeVar

from .errors import StepNotFoundError, TransitionError, WorkflowDefinitionError
from .llm import ConversationalAgent, NullAgent
from .models import END, WorkflowState, WorkflowStatus, utc_now_iso
from .settings import RuntimeSettings
from .state_store import WorkflowStateStore
from .steps import PortRef, Step, StepContext, parse_port_inputs
from .utils import MISSING

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _no_backoff(attempt: int) -> float:
    return 0.0


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry around a single callable.

    ``max_retries`` counts re-invocations after the first attempt, so a callable that
    always fails runs ``max_retries + 1`` times. ``backoff`` maps the retry number
    (1-based) to a delay in seconds; the default retries immediately.
    """

    max_retries: int = 3
    backoff: Callable[[int], float] = _no_backoff
    sleep: Callable[[float], None] = time.sleep

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got: {self.max_retries}")

    def call(self, fn: Callable[[], T], *, on_retry: Callable[[int, Exception], None] | None = None) -> T:
        retries = 0
        while True:
            try:
                return fn()
            except Exception as exc:
                if retries >= self.max_retries:
                    raise
                retries += 1
                if on_retry is not None:
                    on_retry(retries, exc)
                delay = self.backoff(retries)
                if delay > 0:
                    self.sleep(delay)


@dataclass
class PortStore:
    """Latest output values per producing step, kept apart from workflow state."""

    values: dict[str, dict[str, Any]] = field(default_factory=dict)

    def write(self, step_name: str, outputs: Mapping[str, Any]) -> None:
        self.values.setdefault(step_name, {}).update(outputs)

    def read(self, ref: PortRef, default: Any = None) -> Any:
        return self.values.get(ref.step, {}).get(ref.output, default)

    def resolve(self, bindings: Mapping[str, PortRef]) -> dict[str, Any]:
        """Resolve input slots; slots whose source has not been written are left out."""
        resolved: dict[str, Any] = {}
        for slot, ref in bindings.items():
            value = self.read(ref, MISSING)
            if value is not MISSING:
                resolved[slot] = value
        return resolved


class StepLoggerAdapter(logging.LoggerAdapter):
    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        return f"[{self.extra['instance_id']}:{self.extra['step']}] {msg}", kwargs


class WorkflowEngine:
    """Checkpointed state machine over a fixed map of named steps.

    Each iteration runs the current step, merges its result into the state, asks the
    step for the next name and persists a checkpoint. ``END`` completes the instance and
    ``ERROR`` fails it. A failing step is retried in place up to ``max_retries`` times.
    """

    def __init__(
        self,
        steps: Mapping[str, Step] | Iterable[Step],
        *,
        store: WorkflowStateStore,
        start_step: str | None = None,
        max_retries: int = 3,
        retry_policy: RetryPolicy | None = None,
        agent: ConversationalAgent | None = None,
    ) -> None:
        self.steps: dict[str, Step] = dict(steps) if isinstance(steps, Mapping) else {step.name: step for step in steps}
        self.validate_graph(self.steps)
        if start_step is not None and start_step not in self.steps:
            raise WorkflowDefinitionError(f"Start step {start_step!r} is not defined")
        self.store = store
        self.start_step = start_step
        self.retry_policy = retry_policy if retry_policy is not None else RetryPolicy(max_retries=max_retries)
        self.agent: ConversationalAgent = agent if agent is not None else NullAgent()
        self._ports: dict[str, PortStore] = {}

    @classmethod
    def from_settings(
        cls,
        steps: Mapping[str, Step] | Iterable[Step],
        settings: RuntimeSettings,
        *,
        start_step: str | None = None,
        agent: ConversationalAgent | None = None,
    ) -> "WorkflowEngine":
        """Build an engine whose checkpoint directory and retry budget come from ``settings``."""
        return cls(
            steps,
            store=WorkflowStateStore(settings.state_path()),
            start_step=start_step,
            retry_policy=RetryPolicy(max_retries=settings.max_retries),
            agent=agent,
        )

    @staticmethod
    def validate_graph(steps: Mapping[str, Step]) -> None:
        """Check that every step exposes callable ``execute`` and ``next``.

        Whether ``next`` returns a defined name is only known at run time.

        Raises:
            WorkflowDefinitionError: Listing every offending step.
        """
        problems: list[str] = []
        for key, step in steps.items():
            for attr in ("execute", "next"):
                if not callable(getattr(step, attr, None)):
                    problems.append(f"{key}: missing callable {attr}()")
        if problems:
            raise WorkflowDefinitionError("Invalid workflow graph: " + "; ".join(problems))

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def run(
        self,
        instance_id: str,
        initial_state: WorkflowState | None = None,
        *,
        context: Mapping[str, Any] | None = None,
    ) -> WorkflowState:
        """Run (or resume) ``instance_id`` until it reaches a terminal step.

        A stored checkpoint always wins over ``initial_state`` and ``context``.

        Raises:
            StepNotFoundError: The current step has no definition.
            Exception: Whatever the step raised once retries are exhausted.
        """
        state = self.store.load(instance_id)
        if state is not None:
            logger.info("Resuming workflow %s at step %s", instance_id, state.current_step)
        elif initial_state is not None:
            state = initial_state.model_copy(update={"instance_id": instance_id})
        else:
            if self.start_step is None:
                raise WorkflowDefinitionError("No stored state, no initial state and no start step")
            state = WorkflowState(instance_id=instance_id, current_step=self.start_step, context=dict(context or {}))

        ports = self._ports.setdefault(instance_id, PortStore())
        while not state.is_terminal:
            step = self.steps.get(state.current_step)
            if step is None:
                self._checkpoint(instance_id, state, WorkflowStatus.FAILED)
                raise StepNotFoundError(state.current_step, instance_id)

            attempt = functools.partial(self._attempt, instance_id, step, state, ports)
            try:
                state = self.retry_policy.call(attempt, on_retry=functools.partial(self._log_retry, instance_id, step.name))
            except Exception as exc:
                logger.error("Workflow %s failed at step %s: %s", instance_id, step.name, exc)
                self._checkpoint(instance_id, state, WorkflowStatus.FAILED)
                raise

        final_status = WorkflowStatus.COMPLETED if state.current_step == END else WorkflowStatus.FAILED
        state = self._checkpoint(instance_id, state, final_status)
        logger.info("Workflow %s finished at %s with status %s", instance_id, state.current_step, final_status.value)
        return state

    def _attempt(self, instance_id: str, step: Step, state: WorkflowState, ports: PortStore) -> WorkflowState:
        running = self._checkpoint(instance_id, state, WorkflowStatus.RUNNING)

        bindings = parse_port_inputs(getattr(step, "port_inputs", None))
        ctx = StepContext(
            instance_id=instance_id,
            step_name=step.name,
            agent=self.agent,
            logger=StepLoggerAdapter(logger, {"instance_id": instance_id, "step": step.name}),
            inputs=ports.resolve(bindings),
        )
        update = step.execute(running, ctx) or {}
        if not isinstance(update, Mapping):
            raise TypeError(f"Step {step.name!r} returned {type(update).__name__}; expected a mapping")
        if ctx.outputs:
            ports.write(step.name, ctx.outputs)

        merged = self._merge(running, update)
        next_step = step.next(merged)
        if not isinstance(next_step, str) or not next_step:
            raise TransitionError(f"Step {step.name!r} returned invalid next step {next_step!r}")

        advanced = merged.model_copy(update={"current_step": next_step})
        self.store.save(instance_id, advanced)
        logger.debug("Workflow %s: %s -> %s", instance_id, step.name, next_step)
        return advanced

    @staticmethod
    def _merge(state: WorkflowState, update: Mapping[str, Any]) -> WorkflowState:
        payload = state.model_dump()
        payload.update(update)
        payload["updated_at"] = utc_now_iso()
        return WorkflowState.model_validate(payload)

    def _checkpoint(self, instance_id: str, state: WorkflowState, status: WorkflowStatus) -> WorkflowState:
        updated = state.model_copy(update={"status": status, "updated_at": utc_now_iso()}, deep=True)
        self.store.save(instance_id, updated)
        return updated

    def _log_retry(self, instance_id: str, step_name: str, retry: int, exc: Exception) -> None:
        logger.warning(
            "Step %s of workflow %s failed, retry %d/%d: %s",
            step_name,
            instance_id,
            retry,
            self.retry_policy.max_retries,
            exc,
        )

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def get_state(self, instance_id: str) -> WorkflowState | None:
        return self.store.load(instance_id)

    def ports(self, instance_id: str) -> dict[str, dict[str, Any]]:
        store = self._ports.get(instance_id)
        return {step: dict(values) for step, values in store.values.items()} if store else {}

    def delete_workflow(self, instance_id: str) -> None:
        self.store.delete(instance_id)
        self._ports.pop(instance_id, None)

    def list_workflows(self) -> list[str]:
        return self.store.list()
