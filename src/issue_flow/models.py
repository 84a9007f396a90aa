from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

END = "END"
ERROR = "ERROR"
TERMINAL_STEPS = frozenset({END, ERROR})


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


class ItemState(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class ItemStatus(str, Enum):
    READY = "READY"
    BLOCKED = "BLOCKED"
    CLOSED = "CLOSED"


class PriorityLevel(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NONE = "none"


class WorkflowStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


def make_item_id(owner: str, repo: str, number: int) -> str:
    return f"{owner}/{repo}#{number}"


# ---------------------------------------------------------------------------
# Dispatch models
# ---------------------------------------------------------------------------


class WorkItem(BaseModel):
    """A tracked issue as returned by the tracker client."""

    model_config = ConfigDict(frozen=True)

    owner: str
    repo: str
    number: int
    title: str
    body: str = ""
    state: ItemState = ItemState.OPEN
    labels: list[str] = Field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    url: str = ""
    project_item_id: str | None = None
    sub_issue_numbers: list[int] = Field(default_factory=list)
    parent_issue_number: int | None = None

    @field_validator("body", mode="before")
    @classmethod
    def _body_none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def _blank_timestamp_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def id(self) -> str:
        return make_item_id(self.owner, self.repo, self.number)

    @property
    def is_closed(self) -> bool:
        return self.state == ItemState.CLOSED


class DependencyRef(BaseModel):
    """Reference to another work item. Owner/repo compare case-insensitively."""

    model_config = ConfigDict(frozen=True)

    owner: str
    repo: str
    number: int

    @property
    def key(self) -> str:
        return make_item_id(self.owner.lower(), self.repo.lower(), self.number)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DependencyRef):
            return NotImplemented
        return self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)

    def __str__(self) -> str:
        return make_item_id(self.owner, self.repo, self.number)


class ResolvedItem(BaseModel):
    item: WorkItem
    status: ItemStatus
    dependencies: list[DependencyRef] = Field(default_factory=list)
    blocked_by: list[DependencyRef] = Field(default_factory=list)
    priority: PriorityLevel = PriorityLevel.NONE
    priority_score: int = 4
    is_leaf: bool = True
    sub_issue_numbers: list[int] = Field(default_factory=list)
    parent_issue_number: int | None = None

    @property
    def id(self) -> str:
        return self.item.id


class DagNode(BaseModel):
    id: str
    resolved: ResolvedItem
    depends_on: list[str] = Field(default_factory=list)
    depended_by: list[str] = Field(default_factory=list)


class CycleInfo(BaseModel):
    has_cycle: bool = True
    cycle_nodes: list[str]
    description: str


class MatrixEntry(BaseModel):
    issue_number: int
    title: str
    priority: PriorityLevel
    priority_score: int
    repository: str
    url: str
    parent_issue_number: int | None = None


class MatrixOutput(BaseModel):
    include: list[MatrixEntry] = Field(default_factory=list)


class DispatchResult(BaseModel):
    total_items: int
    ready: list[ResolvedItem] = Field(default_factory=list)
    blocked: list[ResolvedItem] = Field(default_factory=list)
    parents: list[ResolvedItem] = Field(default_factory=list)
    cycle_warnings: list[CycleInfo] = Field(default_factory=list)
    matrix: MatrixOutput = Field(default_factory=MatrixOutput)
    timestamp: str = Field(default_factory=utc_now_iso)
    dry_run: bool = False
    ready_total: int = 0
    status_updates: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Workflow models
# ---------------------------------------------------------------------------


class StoredMessage(BaseModel):
    type: Literal["user", "assistant", "system", "result"]
    content: str
    timestamp: str = Field(default_factory=utc_now_iso)
    metadata: dict[str, Any] | None = None


class WorkflowState(BaseModel):
    """Checkpointed state of one workflow instance."""

    model_config = ConfigDict(extra="forbid")

    instance_id: str
    current_step: str
    status: WorkflowStatus = WorkflowStatus.PENDING
    context: dict[str, Any] = Field(default_factory=dict)
    conversation_history: list[StoredMessage] = Field(default_factory=list)
    updated_at: str = Field(default_factory=utc_now_iso)

    @property
    def is_terminal(self) -> bool:
        return self.current_step in TERMINAL_STEPS
