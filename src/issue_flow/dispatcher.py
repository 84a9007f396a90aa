from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any, Protocol, TypedDict

from langgraph.graph import END, START, StateGraph
from langgraph.types import Command

from .canonical import to_canonical_json
from .dag import DagBuilder, TrackerClient
from .errors import DispatchError, DispatchErrorCode
from .models import CycleInfo, DispatchResult, MatrixEntry, MatrixOutput, ResolvedItem, WorkItem
from .scheduling import apply_max_concurrent, format_blocked_by, sort_by_priority
from .settings import DispatchConfig

logger = logging.getLogger(__name__)

_RULE = "=" * 60


class DispatchSource(TrackerClient, Protocol):
    """Tracker operations the dispatcher needs on top of state and hierarchy lookups."""

    def fetch_items_by_label(self, label: str = "queue") -> list[WorkItem]: ...

    def fetch_project_items(
        self,
        project_owner: str,
        project_number: int,
        *,
        status: str = "Ready",
        priority_field: str = "Priority",
    ) -> list[WorkItem]: ...

    def set_project_status(self, project_owner: str, project_number: int, item_id: str, status: str) -> None: ...


class DispatchState(TypedDict, total=False):
    items: list[WorkItem]
    ready: list[ResolvedItem]
    ready_total: int
    blocked: list[ResolvedItem]
    parents: list[ResolvedItem]
    cycle_warnings: list[CycleInfo]
    status_updates: list[str]
    matrix: MatrixOutput


class Dispatcher:
    """Dispatch pipeline: fetch_items -> build_graph -> [mark_in_progress] -> build_matrix."""

    def __init__(self, config: DispatchConfig, client: DispatchSource) -> None:
        self.config = config
        self.client = client
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(DispatchState)
        graph.add_node("fetch_items", self._fetch_items)
        graph.add_node("build_graph", self._build_dependency_graph)
        graph.add_node("mark_in_progress", self._mark_in_progress)
        graph.add_node("build_matrix", self._build_matrix)

        graph.add_edge(START, "fetch_items")
        graph.add_edge("fetch_items", "build_graph")
        graph.add_edge("mark_in_progress", "build_matrix")
        graph.add_edge("build_matrix", END)
        return graph

    def _fetch_items(self, state: DispatchState) -> dict[str, Any]:
        config = self.config
        if config.source == "project":
            if config.project_owner is None or config.project_number is None:
                raise DispatchError(
                    "Project source requires a project owner and number",
                    DispatchErrorCode.INVALID_CONFIG,
                )
            items = self.client.fetch_project_items(
                config.project_owner,
                config.project_number,
                status=config.ready_status,
                priority_field=config.priority_field,
            )
        else:
            items = self.client.fetch_items_by_label(config.label)
        logger.info("Fetched %d items from %s source", len(items), config.source)
        return {"items": items}

    def _build_dependency_graph(self, state: DispatchState) -> Command[str]:
        items = state.get("items", [])
        open_items = [item for item in items if not item.is_closed]
        closed_items = [item for item in items if item.is_closed]
        logger.info("Open items: %d", len(open_items))

        builder = DagBuilder(self.client, default_owner=self.config.owner, default_repo=self.config.repo)
        builder.build(open_items, known_items=closed_items)

        cycles = builder.detect_cycles()
        for cycle in cycles:
            logger.warning(cycle.description)

        ready_leaves = builder.ready_leaves()
        ready = apply_max_concurrent(ready_leaves, self.config.max_concurrent)
        if len(ready) < len(ready_leaves):
            logger.info("Applied max concurrent limit %s: %d of %d ready", self.config.max_concurrent, len(ready), len(ready_leaves))

        update = {
            "ready": ready,
            "ready_total": len(ready_leaves),
            "blocked": builder.blocked(),
            "parents": builder.parents(),
            "cycle_warnings": cycles,
            "status_updates": [],
        }
        if self.config.source == "project" and not self.config.dry_run and ready:
            return Command(update=update, goto="mark_in_progress")
        if self.config.dry_run:
            logger.info("Dry run: skipping tracker status updates")
        return Command(update=update, goto="build_matrix")

    def _mark_in_progress(self, state: DispatchState) -> dict[str, Any]:
        config = self.config
        updated: list[str] = []
        for resolved in state.get("ready", []):
            item = resolved.item
            if item.project_item_id is None:
                logger.warning("%s has no project item id; status left unchanged", item.id)
                continue
            try:
                self.client.set_project_status(
                    config.project_owner or config.owner,
                    config.project_number or 0,
                    item.project_item_id,
                    config.in_progress_status,
                )
            except DispatchError as exc:
                logger.warning("Could not set %s to %r: %s", item.id, config.in_progress_status, exc)
                continue
            updated.append(item.id)
        return {"status_updates": updated}

    def _build_matrix(self, state: DispatchState) -> dict[str, Any]:
        return {"matrix": generate_matrix(state.get("ready", []))}

    def run(self) -> DispatchResult:
        config = self.config
        logger.info(
            "Starting dispatch for %s (source=%s, max_concurrent=%s, dry_run=%s)",
            config.repository,
            config.source,
            config.max_concurrent or "unlimited",
            config.dry_run,
        )
        final = self.graph.invoke({"status_updates": []})
        result = DispatchResult(
            total_items=len(final.get("items", [])),
            ready=final.get("ready", []),
            blocked=final.get("blocked", []),
            parents=final.get("parents", []),
            cycle_warnings=final.get("cycle_warnings", []),
            matrix=final.get("matrix") or MatrixOutput(),
            dry_run=config.dry_run,
            ready_total=final.get("ready_total", 0),
            status_updates=final.get("status_updates", []),
        )
        logger.info(
            "Dispatch complete: %d ready, %d blocked, %d parents, %d matrix entries",
            len(result.ready),
            len(result.blocked),
            len(result.parents),
            len(result.matrix.include),
        )
        return result


def dispatch(config: DispatchConfig, client: DispatchSource) -> DispatchResult:
    return Dispatcher(config, client).run()


def generate_matrix(items: Sequence[ResolvedItem]) -> MatrixOutput:
    """Build matrix entries in priority order from ready items."""
    return MatrixOutput(
        include=[
            MatrixEntry(
                issue_number=resolved.item.number,
                title=resolved.item.title,
                priority=resolved.priority,
                priority_score=resolved.priority_score,
                repository=f"{resolved.item.owner}/{resolved.item.repo}",
                url=resolved.item.url,
                parent_issue_number=resolved.parent_issue_number,
            )
            for resolved in sort_by_priority(items)
        ]
    )


def matrix_to_json(matrix: MatrixOutput) -> str:
    return json.dumps(matrix.model_dump(mode="json"), indent=2)


def format_result_summary(result: DispatchResult) -> str:
    lines = [
        _RULE,
        "DISPATCH SUMMARY",
        _RULE,
        "",
        f"Timestamp: {result.timestamp}",
        f"Dry Run: {str(result.dry_run).lower()}",
        "",
        f"Total Items: {result.total_items}",
        f"Ready Leaf Items: {len(result.ready)} of {result.ready_total}",
        f"Blocked Items: {len(result.blocked)}",
        f"Parent Items: {len(result.parents)}",
        "",
    ]

    if result.cycle_warnings:
        lines.append("CYCLE WARNINGS:")
        lines.extend(f"  - {cycle.description}" for cycle in result.cycle_warnings)
        lines.append("")

    if result.ready:
        lines.append("READY FOR EXECUTION:")
        for resolved in result.ready:
            parent = f" (child of #{resolved.parent_issue_number})" if resolved.parent_issue_number else ""
            lines.append(f"  [{resolved.priority.value.upper()}] {resolved.id}: {resolved.item.title}{parent}")
        lines.append("")

    if result.blocked or result.parents:
        lines.append("BLOCKED:")
        for resolved in [*result.blocked, *result.parents]:
            marker = "" if resolved.is_leaf else " [PARENT]"
            lines.append(f"  {resolved.id}{marker}: {resolved.item.title}")
            lines.append(f"    Blocked by: {format_blocked_by(resolved.blocked_by)}")
        lines.append("")

    if result.status_updates:
        lines.append(f"MARKED IN PROGRESS: {', '.join(result.status_updates)}")
        lines.append("")

    lines.extend([_RULE, "MATRIX OUTPUT:", _RULE, matrix_to_json(result.matrix)])
    return "\n".join(lines)


def write_matrix_to_file(matrix: MatrixOutput, output_file: str | Path) -> Path:
    path = Path(output_file)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(matrix_to_json(matrix) + "\n", encoding="utf-8")
    except OSError as exc:
        raise DispatchError(
            f"Failed to write matrix to {path}: {exc}",
            DispatchErrorCode.IO_ERROR,
            {"path": str(path)},
        ) from exc
    logger.info("Wrote matrix with %d entries to %s", len(matrix.include), path)
    return path


def set_ci_output(matrix: MatrixOutput, env: Mapping[str, str] | None = None) -> bool:
    """Append ``matrix=<json>`` to ``$GITHUB_OUTPUT`` when running under GitHub Actions.

    Returns:
        True when the output line was written.
    """
    environ = os.environ if env is None else env
    if environ.get("GITHUB_ACTIONS") != "true":
        return False
    output_file = environ.get("GITHUB_OUTPUT", "")
    if not output_file:
        logger.warning("GITHUB_ACTIONS is set but GITHUB_OUTPUT is empty; skipping CI output")
        return False
    try:
        with open(output_file, "a", encoding="utf-8") as handle:
            handle.write(f"matrix={to_canonical_json(matrix)}\n")
    except OSError as exc:
        raise DispatchError(
            f"Failed to append CI output to {output_file}: {exc}",
            DispatchErrorCode.IO_ERROR,
            {"path": output_file},
        ) from exc
    return True
