from importlib.metadata import version

from .canonical import to_canonical_json
from .dag import DagBuilder
from .dispatcher import Dispatcher, dispatch, format_result_summary, generate_matrix, set_ci_output, write_matrix_to_file
from .engine import PortStore, RetryPolicy, WorkflowEngine
from .errors import (
    DispatchError,
    DispatchErrorCode,
    StepExecutionError,
    StepNotFoundError,
    TransitionError,
    WorkflowDefinitionError,
    WorkflowError,
)
from .models import (
    END,
    ERROR,
    CycleInfo,
    DagNode,
    DependencyRef,
    DispatchResult,
    ItemState,
    ItemStatus,
    MatrixEntry,
    MatrixOutput,
    PriorityLevel,
    ResolvedItem,
    StoredMessage,
    WorkflowState,
    WorkflowStatus,
    WorkItem,
)
from .references import parse_dependencies
from .scheduling import apply_max_concurrent, extract_priority, priority_score, sort_by_priority
from .settings import DispatchConfig, RuntimeSettings, build_dispatch_config
from .state_store import WorkflowStateStore, sanitize_id
from .steps import BaseStep, CommandStep, EvalStep, FunctionStep, HttpStep, LlmStep, PortRef, Step, StepContext, StepKind
from .transitions import Arbitrary, Binary, Fixed, MultiWay, parse_transition
from .validation import ValidationIssue, ValidationReport, WorkflowDefinition, validate_workflow


def get_version() -> str:
    try:
        return version("issue-flow")
    except Exception:
        return "0.0.0"


__all__ = [
    "END",
    "ERROR",
    "Arbitrary",
    "BaseStep",
    "Binary",
    "CommandStep",
    "CycleInfo",
    "DagBuilder",
    "DagNode",
    "DependencyRef",
    "DispatchConfig",
    "DispatchError",
    "DispatchErrorCode",
    "DispatchResult",
    "Dispatcher",
    "EvalStep",
    "Fixed",
    "FunctionStep",
    "HttpStep",
    "ItemState",
    "ItemStatus",
    "LlmStep",
    "MatrixEntry",
    "MatrixOutput",
    "MultiWay",
    "PortRef",
    "PortStore",
    "PriorityLevel",
    "ResolvedItem",
    "RetryPolicy",
    "RuntimeSettings",
    "Step",
    "StepContext",
    "StepExecutionError",
    "StepKind",
    "StepNotFoundError",
    "StoredMessage",
    "TransitionError",
    "ValidationIssue",
    "ValidationReport",
    "WorkItem",
    "WorkflowDefinition",
    "WorkflowDefinitionError",
    "WorkflowEngine",
    "WorkflowError",
    "WorkflowState",
    "WorkflowStateStore",
    "WorkflowStatus",
    "apply_max_concurrent",
    "build_dispatch_config",
    "dispatch",
    "extract_priority",
    "format_result_summary",
    "generate_matrix",
    "parse_dependencies",
    "parse_transition",
    "priority_score",
    "sanitize_id",
    "set_ci_output",
    "sort_by_priority",
    "to_canonical_json",
    "validate_workflow",
    "write_matrix_to_file",
]
