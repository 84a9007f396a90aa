from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

import pytest

from issue_flow.engine import PortStore, RetryPolicy, WorkflowEngine
from issue_flow.errors import StepNotFoundError, TransitionError, WorkflowDefinitionError
from issue_flow.llm import TurnResult
from issue_flow.models import END, ERROR, StoredMessage, WorkflowState, WorkflowStatus
from issue_flow.settings import RuntimeSettings
from issue_flow.state_store import WorkflowStateStore
from issue_flow.steps import EvalStep, FunctionStep, LlmStep, PortRef, StepContext


def _set(**values: Any):
    def _fn(state: WorkflowState, ctx: StepContext) -> Mapping[str, Any]:
        return {"context": {**state.context, **values}}

    return _fn


@pytest.fixture
def store(tmp_path: Path) -> WorkflowStateStore:
    return WorkflowStateStore(tmp_path / "state")


def test_linear_workflow_completes(store: WorkflowStateStore) -> None:
    engine = WorkflowEngine(
        [FunctionStep("a", _set(x=1), "b"), FunctionStep("b", _set(y=2), END)],
        store=store,
        start_step="a",
    )
    final = engine.run("wf-1", context={"seed": True})

    assert final.current_step == END
    assert final.status == WorkflowStatus.COMPLETED
    assert final.context == {"seed": True, "x": 1, "y": 2}
    assert store.load("wf-1") == final
    assert engine.list_workflows() == ["wf-1"]


def test_binary_transition_routes_on_merged_state(store: WorkflowStateStore) -> None:
    visited: list[str] = []

    def _record(name: str):
        def _fn(state: WorkflowState, ctx: StepContext) -> None:
            visited.append(name)

        return _fn

    steps = [
        EvalStep("check", lambda state, ctx: {"approved": state.context["score"] > 5}, {"if": "approved", "then": "ship", "else": "revise"}),
        FunctionStep("ship", _record("ship"), END),
        FunctionStep("revise", _record("revise"), END),
    ]
    engine = WorkflowEngine(steps, store=store, start_step="check")

    engine.run("high", context={"score": 9})
    engine.run("low", context={"score": 1})
    assert visited == ["ship", "revise"]


def test_failing_step_retries_then_fails(store: WorkflowStateStore) -> None:
    calls: list[int] = []

    def _boom(state: WorkflowState, ctx: StepContext) -> None:
        calls.append(1)
        raise RuntimeError("boom")

    engine = WorkflowEngine(
        [FunctionStep("a", _set(x=1), "b"), FunctionStep("b", _boom, END)],
        store=store,
        start_step="a",
        max_retries=2,
    )
    with pytest.raises(RuntimeError, match="boom"):
        engine.run("wf")

    assert len(calls) == 3
    stored = store.load("wf")
    assert stored is not None
    assert stored.status == WorkflowStatus.FAILED
    assert stored.current_step == "b"
    assert stored.context == {"x": 1}


def test_in_place_context_mutation_does_not_leak_across_attempts(store: WorkflowStateStore) -> None:
    seen: list[int] = []

    def _mutate_then_fail(state: WorkflowState, ctx: StepContext) -> None:
        seen.append(state.context["n"])
        state.context["n"] += 1
        state.context["log"].append("attempt")
        raise RuntimeError("boom")

    engine = WorkflowEngine([FunctionStep("a", _mutate_then_fail, END)], store=store, start_step="a", max_retries=1)
    with pytest.raises(RuntimeError):
        engine.run("wf", context={"n": 0, "log": []})

    assert seen == [0, 0]
    stored = store.load("wf")
    assert stored is not None
    assert stored.status == WorkflowStatus.FAILED
    assert stored.context == {"n": 0, "log": []}


def test_engine_from_settings_uses_state_dir_and_retry_budget(tmp_path: Path) -> None:
    calls: list[int] = []

    def _boom(state: WorkflowState, ctx: StepContext) -> None:
        calls.append(1)
        raise RuntimeError("boom")

    settings = RuntimeSettings(state_dir=str(tmp_path / "checkpoints"), max_retries=4)
    engine = WorkflowEngine.from_settings([FunctionStep("a", _boom, END)], settings, start_step="a")
    with pytest.raises(RuntimeError):
        engine.run("wf")

    assert engine.retry_policy.max_retries == 4
    assert len(calls) == 5
    assert (tmp_path / "checkpoints" / "wf.json").is_file()


def test_flaky_step_recovers_on_retry(store: WorkflowStateStore) -> None:
    attempts: list[int] = []

    def _flaky(state: WorkflowState, ctx: StepContext) -> Mapping[str, Any]:
        attempts.append(1)
        if len(attempts) < 2:
            raise ConnectionError("transient")
        return {"context": {"done": True}}

    engine = WorkflowEngine([FunctionStep("a", _flaky, END)], store=store, start_step="a", max_retries=1)
    final = engine.run("wf")
    assert final.status == WorkflowStatus.COMPLETED
    assert len(attempts) == 2


def test_missing_step_fails_without_retry(store: WorkflowStateStore) -> None:
    engine = WorkflowEngine([FunctionStep("a", _set(), "ghost")], store=store, start_step="a", max_retries=5)
    with pytest.raises(StepNotFoundError) as exc_info:
        engine.run("wf")

    assert exc_info.value.step_name == "ghost"
    stored = store.load("wf")
    assert stored is not None
    assert stored.current_step == "ghost"
    assert stored.status == WorkflowStatus.FAILED


def test_error_terminal_marks_instance_failed(store: WorkflowStateStore) -> None:
    engine = WorkflowEngine([FunctionStep("a", _set(reason="bad input"), ERROR)], store=store, start_step="a")
    final = engine.run("wf")
    assert final.current_step == ERROR
    assert final.status == WorkflowStatus.FAILED
    assert final.context["reason"] == "bad input"


def test_invalid_next_step_is_transition_error(store: WorkflowStateStore) -> None:
    engine = WorkflowEngine(
        [FunctionStep("a", _set(), lambda state: "")],
        store=store,
        start_step="a",
        max_retries=0,
    )
    with pytest.raises(TransitionError):
        engine.run("wf")


def test_run_resumes_from_checkpoint(store: WorkflowStateStore) -> None:
    executed: list[str] = []

    def _mark(name: str):
        def _fn(state: WorkflowState, ctx: StepContext) -> Mapping[str, Any]:
            executed.append(name)
            return {"context": {**state.context, name: True}}

        return _fn

    store.save(
        "wf",
        WorkflowState(instance_id="wf", current_step="b", status=WorkflowStatus.FAILED, context={"a": True}),
    )
    engine = WorkflowEngine([FunctionStep("a", _mark("a"), "b"), FunctionStep("b", _mark("b"), END)], store=store, start_step="a")
    final = engine.run("wf", context={"ignored": True})

    assert executed == ["b"]
    assert final.context == {"a": True, "b": True}
    assert final.status == WorkflowStatus.COMPLETED


def test_initial_state_is_used_without_checkpoint(store: WorkflowStateStore) -> None:
    engine = WorkflowEngine([FunctionStep("a", _set(x=1), "b"), FunctionStep("b", _set(y=1), END)], store=store)
    initial = WorkflowState(instance_id="other", current_step="b", context={"given": 1})
    final = engine.run("wf", initial)
    assert final.instance_id == "wf"
    assert final.context == {"given": 1, "y": 1}


def test_run_without_any_starting_point_is_rejected(store: WorkflowStateStore) -> None:
    engine = WorkflowEngine([FunctionStep("a", _set(), END)], store=store)
    with pytest.raises(WorkflowDefinitionError):
        engine.run("wf")


def test_port_outputs_flow_to_declared_inputs(store: WorkflowStateStore) -> None:
    seen: dict[str, Any] = {}

    def _produce(state: WorkflowState, ctx: StepContext) -> None:
        ctx.set_output("plan", ["step one", "step two"])

    def _consume(state: WorkflowState, ctx: StepContext) -> None:
        seen.update(ctx.inputs)

    engine = WorkflowEngine(
        [
            FunctionStep("produce", _produce, "consume"),
            FunctionStep("consume", _consume, END, port_inputs={"plan": "produce.plan", "notes": "review.notes"}),
        ],
        store=store,
        start_step="produce",
    )
    final = engine.run("wf")

    assert seen == {"plan": ["step one", "step two"]}
    assert engine.ports("wf") == {"produce": {"plan": ["step one", "step two"]}}
    assert "plan" not in final.context
    engine.delete_workflow("wf")
    assert engine.get_state("wf") is None
    assert engine.ports("wf") == {}


def test_llm_step_records_conversation(store: WorkflowStateStore) -> None:
    class _EchoAgent:
        def __init__(self) -> None:
            self.prompts: list[str] = []

        def run_turn(self, history: Any, prompt: str, *, system: str | None = None) -> TurnResult:
            self.prompts.append(prompt)
            reply = f"ack: {prompt}"
            return TurnResult(
                response=reply,
                history=[*history, StoredMessage(type="user", content=prompt), StoredMessage(type="assistant", content=reply)],
            )

    agent = _EchoAgent()
    engine = WorkflowEngine(
        [LlmStep("ask", "Summarize {{topic}}", END)],
        store=store,
        start_step="ask",
        agent=agent,
    )
    final = engine.run("wf", context={"topic": "the release"})

    assert agent.prompts == ["Summarize the release"]
    assert final.context["last_llm_response"] == "ack: Summarize the release"
    assert [message.type for message in final.conversation_history] == ["user", "assistant"]
    assert store.load("wf") == final


def test_validate_graph_rejects_incomplete_steps(store: WorkflowStateStore) -> None:
    class _NoNext:
        name = "a"

        def execute(self, state: WorkflowState, ctx: StepContext) -> None:
            return None

    with pytest.raises(WorkflowDefinitionError, match="next"):
        WorkflowEngine({"a": _NoNext()}, store=store)  # type: ignore[dict-item]

    with pytest.raises(WorkflowDefinitionError):
        WorkflowEngine([FunctionStep("a", _set(), END)], store=store, start_step="missing")


def test_retry_policy_counts_attempts_and_backs_off() -> None:
    delays: list[float] = []
    retries: list[int] = []
    calls: list[int] = []

    def _always_fail() -> None:
        calls.append(1)
        raise ValueError("nope")

    policy = RetryPolicy(max_retries=3, backoff=lambda retry: retry * 0.5, sleep=delays.append)
    with pytest.raises(ValueError):
        policy.call(_always_fail, on_retry=lambda retry, exc: retries.append(retry))

    assert len(calls) == 4
    assert retries == [1, 2, 3]
    assert delays == [0.5, 1.0, 1.5]

    with pytest.raises(ValueError):
        RetryPolicy(max_retries=-1)


def test_port_store_resolve_skips_unwritten_sources() -> None:
    ports = PortStore()
    ports.write("a", {"out": 1})
    ports.write("a", {"other": 2})
    resolved = ports.resolve({"x": PortRef("a", "out"), "y": PortRef("a", "missing"), "z": PortRef("b", "out")})
    assert resolved == {"x": 1}
    assert ports.read(PortRef("a", "other")) == 2
