from __future__ import annotations

import json
import logging
import os
import re
import shlex
import subprocess
import time
import urllib.error
import urllib.parse
import urllib.request
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from .errors import StepExecutionError
from .llm import ConversationalAgent
from .models import WorkflowState
from .transitions import Transition, parse_transition
from .utils import interpolate

_SHELL_SYNTAX_RE = re.compile(r"[|&;<>`$*?]")


class StepKind(str, Enum):
    FUNCTION = "function"
    EVAL = "eval"
    COMMAND = "command"
    HTTP = "http"
    LLM = "llm"


@dataclass
class StepContext:
    """Runtime services handed to a step for one execution attempt."""

    instance_id: str
    step_name: str
    agent: ConversationalAgent
    logger: logging.LoggerAdapter
    inputs: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)

    def set_output(self, slot: str, value: Any) -> None:
        self.outputs[slot] = value


@runtime_checkable
class Step(Protocol):
    name: str

    def execute(self, state: WorkflowState, ctx: StepContext) -> Mapping[str, Any] | None: ...

    def next(self, state: WorkflowState) -> str: ...


@dataclass(frozen=True)
class PortRef:
    """Reference to output slot ``output`` written by step ``step``."""

    step: str
    output: str

    @classmethod
    def parse(cls, value: str) -> "PortRef":
        step, sep, output = value.partition(".")
        if not sep or not step or not output:
            raise ValueError(f"Port reference must look like 'STEP.output', got: {value!r}")
        return cls(step=step, output=output)

    def __str__(self) -> str:
        return f"{self.step}.{self.output}"


def parse_port_inputs(bindings: Mapping[str, str | PortRef] | None) -> dict[str, PortRef]:
    parsed: dict[str, PortRef] = {}
    for slot, ref in (bindings or {}).items():
        parsed[slot] = ref if isinstance(ref, PortRef) else PortRef.parse(ref)
    return parsed


class BaseStep(ABC):
    """Shared plumbing for the built-in step kinds.

    Subclasses implement :meth:`execute`; routing is delegated to the parsed transition.
    """

    kind: StepKind

    def __init__(
        self,
        name: str,
        transition: Any,
        *,
        port_inputs: Mapping[str, str | PortRef] | None = None,
    ) -> None:
        if not name:
            raise ValueError("step name must be non-empty")
        self.name = name
        self.transition: Transition = parse_transition(transition)
        self.port_inputs = parse_port_inputs(port_inputs)

    @abstractmethod
    def execute(self, state: WorkflowState, ctx: StepContext) -> Mapping[str, Any] | None: ...

    def next(self, state: WorkflowState) -> str:
        return self.transition.resolve(state)

    @staticmethod
    def merge_context(state: WorkflowState, **values: Any) -> dict[str, Any]:
        return {"context": {**state.context, **values}}

    @staticmethod
    def template_values(state: WorkflowState, ctx: StepContext) -> dict[str, Any]:
        return {**state.context, "inputs": ctx.inputs, "instance_id": state.instance_id}

    def fail(self, message: str, **details: Any) -> StepExecutionError:
        return StepExecutionError(message, step_name=self.name, kind=self.kind.value, details=details)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, transition={self.transition!r})"


class FunctionStep(BaseStep):
    kind = StepKind.FUNCTION

    def __init__(
        self,
        name: str,
        fn: Callable[[WorkflowState, StepContext], Mapping[str, Any] | None],
        transition: Any,
        *,
        port_inputs: Mapping[str, str | PortRef] | None = None,
    ) -> None:
        super().__init__(name, transition, port_inputs=port_inputs)
        self.fn = fn

    def execute(self, state: WorkflowState, ctx: StepContext) -> Mapping[str, Any] | None:
        return self.fn(state, ctx)


class EvalStep(BaseStep):
    """Compute values from the state, merge them into context and branch on them.

    Every computed key is also published as a port output of the step.
    """

    kind = StepKind.EVAL

    def __init__(
        self,
        name: str,
        evaluate: Callable[[WorkflowState, StepContext], Mapping[str, Any]],
        transition: Any,
        *,
        port_inputs: Mapping[str, str | PortRef] | None = None,
    ) -> None:
        super().__init__(name, transition, port_inputs=port_inputs)
        self.evaluate = evaluate

    def execute(self, state: WorkflowState, ctx: StepContext) -> Mapping[str, Any]:
        computed = dict(self.evaluate(state, ctx) or {})
        for key, value in computed.items():
            ctx.set_output(key, value)
        return self.merge_context(state, **computed)


class CommandStep(BaseStep):
    """Run a shell command and record its exit code and output.

    String commands are ``{{placeholder}}``-interpolated from context and port inputs.
    Commands containing shell syntax run through ``sh -c``; others are split with
    :func:`shlex.split` and executed directly.
    """

    kind = StepKind.COMMAND

    def __init__(
        self,
        name: str,
        command: str | Sequence[str] | Callable[[WorkflowState], str | Sequence[str]],
        transition: Any,
        *,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        throw_on_error: bool = True,
        result_key: str = "last_command_result",
        port_inputs: Mapping[str, str | PortRef] | None = None,
    ) -> None:
        super().__init__(name, transition, port_inputs=port_inputs)
        self.command = command
        self.cwd = cwd
        self.env = dict(env or {})
        self.timeout = timeout
        self.throw_on_error = throw_on_error
        self.result_key = result_key

    def _argv(self, state: WorkflowState, ctx: StepContext) -> list[str]:
        command = self.command(state) if callable(self.command) else self.command
        if isinstance(command, str):
            rendered = interpolate(command, self.template_values(state, ctx))
            if _SHELL_SYNTAX_RE.search(rendered):
                return ["sh", "-c", rendered]
            return shlex.split(rendered)
        return [str(part) for part in command]

    def execute(self, state: WorkflowState, ctx: StepContext) -> dict[str, Any]:
        argv = self._argv(state, ctx)
        if not argv:
            raise self.fail("command is empty")
        ctx.logger.info("Running command: %s", shlex.join(argv))
        started = time.monotonic()
        try:
            completed = subprocess.run(
                argv,
                cwd=self.cwd,
                env={**os.environ, **self.env} if self.env else None,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise self.fail(f"command timed out after {self.timeout}s", command=argv) from exc
        except OSError as exc:
            raise self.fail(f"command could not start: {exc}", command=argv) from exc

        result = {
            "command": shlex.join(argv),
            "exit_code": completed.returncode,
            "stdout": completed.stdout,
            "stderr": completed.stderr,
            "success": completed.returncode == 0,
            "duration_ms": int((time.monotonic() - started) * 1000),
        }
        ctx.set_output("stdout", completed.stdout)
        ctx.set_output("exit_code", completed.returncode)
        if completed.returncode != 0:
            ctx.logger.warning("Command exited with %d: %s", completed.returncode, completed.stderr.strip()[:500])
            if self.throw_on_error:
                raise self.fail(f"command exited with {completed.returncode}", **result)
        return self.merge_context(state, **{self.result_key: result})


class HttpStep(BaseStep):
    """Call an HTTP endpoint and store the status and decoded response body."""

    kind = StepKind.HTTP

    def __init__(
        self,
        name: str,
        url: str | Callable[[WorkflowState], str],
        transition: Any,
        *,
        method: str = "GET",
        headers: Mapping[str, str] | None = None,
        body: Any = None,
        params: Mapping[str, Any] | None = None,
        timeout: float = 30,
        throw_on_error: bool = True,
        result_key: str = "last_http_result",
        port_inputs: Mapping[str, str | PortRef] | None = None,
    ) -> None:
        super().__init__(name, transition, port_inputs=port_inputs)
        self.url = url
        self.method = method.upper()
        self.headers = dict(headers or {})
        self.body = body
        self.params = dict(params or {})
        self.timeout = timeout
        self.throw_on_error = throw_on_error
        self.result_key = result_key

    def _build_request(self, state: WorkflowState, ctx: StepContext) -> urllib.request.Request:
        url = self.url(state) if callable(self.url) else interpolate(self.url, self.template_values(state, ctx))
        if self.params:
            separator = "&" if urllib.parse.urlparse(url).query else "?"
            url = f"{url}{separator}{urllib.parse.urlencode(self.params, doseq=True)}"
        headers = {"Accept": "application/json", **self.headers}
        data: bytes | None = None
        if self.body is not None:
            if isinstance(self.body, (bytes, str)):
                data = self.body.encode("utf-8") if isinstance(self.body, str) else self.body
            else:
                headers.setdefault("Content-Type", "application/json")
                data = json.dumps(self.body).encode("utf-8")
        return urllib.request.Request(url, method=self.method, headers=headers, data=data)

    @staticmethod
    def _decode(raw: bytes, content_type: str) -> Any:
        text = raw.decode("utf-8", errors="replace")
        if "json" in content_type.lower() and text.strip():
            try:
                return json.loads(text)
            except json.JSONDecodeError:
                return text
        return text

    def execute(self, state: WorkflowState, ctx: StepContext) -> dict[str, Any]:
        request = self._build_request(state, ctx)
        ctx.logger.info("%s %s", request.get_method(), request.full_url)
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                status = response.status
                data = self._decode(response.read(), response.headers.get("Content-Type", ""))
        except urllib.error.HTTPError as exc:
            status = exc.code
            data = self._decode(exc.read(), exc.headers.get("Content-Type", "") if exc.headers else "")
        except urllib.error.URLError as exc:
            raise self.fail(f"failed to reach {request.full_url}: {exc.reason}", url=request.full_url) from exc

        result = {"url": request.full_url, "method": request.get_method(), "status": status, "ok": 200 <= status < 300, "data": data}
        ctx.set_output("status", status)
        ctx.set_output("data", data)
        if not result["ok"] and self.throw_on_error:
            raise self.fail(f"HTTP {status} from {request.full_url}", **result)
        return self.merge_context(state, **{self.result_key: result})


class LlmStep(BaseStep):
    """Run one conversational turn through the configured agent."""

    kind = StepKind.LLM

    def __init__(
        self,
        name: str,
        prompt: str | Callable[[WorkflowState, StepContext], str],
        transition: Any,
        *,
        system: str | None = None,
        result_key: str = "last_llm_response",
        port_inputs: Mapping[str, str | PortRef] | None = None,
    ) -> None:
        super().__init__(name, transition, port_inputs=port_inputs)
        self.prompt = prompt
        self.system = system
        self.result_key = result_key

    def execute(self, state: WorkflowState, ctx: StepContext) -> dict[str, Any]:
        if callable(self.prompt):
            prompt = self.prompt(state, ctx)
        else:
            prompt = interpolate(self.prompt, self.template_values(state, ctx))
        turn = ctx.agent.run_turn(state.conversation_history, prompt, system=self.system)
        ctx.set_output("response", turn.response)
        return {
            **self.merge_context(state, **{self.result_key: turn.response}),
            "conversation_history": turn.history,
        }
