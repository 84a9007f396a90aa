from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Protocol

from .models import (
    CycleInfo,
    DagNode,
    DependencyRef,
    ItemState,
    ItemStatus,
    ResolvedItem,
    WorkItem,
)
from .references import parse_dependencies
from .scheduling import extract_priority, priority_score

logger = logging.getLogger(__name__)


class TrackerClient(Protocol):
    """Read-only tracker operations needed to resolve item states and hierarchy."""

    def fetch_item(self, owner: str, repo: str, number: int) -> WorkItem | None: ...

    def fetch_children(self, owner: str, repo: str, number: int) -> list[int]: ...

    def fetch_parent(self, owner: str, repo: str, number: int) -> int | None: ...


@dataclass
class Hierarchy:
    children: list[int] = field(default_factory=list)
    parent: int | None = None


def _ref_for(item: WorkItem) -> DependencyRef:
    return DependencyRef(owner=item.owner, repo=item.repo, number=item.number)


class DagBuilder:
    """Build the dependency graph for one dispatch run.

    Nodes are keyed by item id (``owner/repo#N``). ``depends_on`` holds node ids for
    dependencies inside the batch and plain reference strings for everything else.
    """

    def __init__(
        self,
        client: TrackerClient,
        *,
        default_owner: str,
        default_repo: str,
        fetch_hierarchy: bool = True,
    ) -> None:
        self.client = client
        self.default_owner = default_owner
        self.default_repo = default_repo
        self.fetch_hierarchy = fetch_hierarchy
        self.nodes: dict[str, DagNode] = {}
        self._node_ids: dict[str, str] = {}
        self._state_cache: dict[str, ItemState] = {}

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    def build(self, items: Sequence[WorkItem], *, known_items: Iterable[WorkItem] = ()) -> dict[str, DagNode]:
        """Resolve dependencies, hierarchy and status for every item in ``items``.

        Args:
            items: Items to place in the graph (normally only open ones).
            known_items: Extra items whose state is already known, such as closed items
                returned by the same fetch. They seed the state cache but get no node.

        Returns:
            The node map, also kept on ``self.nodes``.
        """
        self.nodes = {}
        self._node_ids = {}
        self._state_cache = {}
        for known in known_items:
            self._state_cache[_ref_for(known).key] = known.state
        for item in items:
            ref = _ref_for(item)
            self._state_cache[ref.key] = item.state
            self._node_ids[ref.key] = item.id

        hierarchy = self._load_hierarchy(items) if self.fetch_hierarchy else {}

        for item in items:
            links = hierarchy.get(item.id)
            if links is None:
                links = Hierarchy(children=list(item.sub_issue_numbers), parent=item.parent_issue_number)
            self.nodes[item.id] = self._resolve(item, links)

        for node in self.nodes.values():
            for dep_id in node.depends_on:
                target = self.nodes.get(dep_id)
                if target is not None:
                    target.depended_by.append(node.id)

        logger.info(
            "Built graph with %d nodes (%d ready leaves, %d blocked, %d parents)",
            len(self.nodes),
            len(self.ready_leaves()),
            len(self.blocked()),
            len(self.parents()),
        )
        return self.nodes

    def _resolve(self, item: WorkItem, links: Hierarchy) -> DagNode:
        dependencies = parse_dependencies(item.body, self.default_owner, self.default_repo)
        priority = extract_priority(item.labels)

        blocked_by: list[DependencyRef] = []
        open_children: list[int] = []
        if not item.is_closed:
            for dep in dependencies:
                if self._is_blocking(dep):
                    blocked_by.append(dep)
            for number in links.children:
                child = DependencyRef(owner=item.owner, repo=item.repo, number=number)
                if self._is_blocking(child):
                    open_children.append(number)
                    if child not in blocked_by:
                        blocked_by.append(child)

        if item.is_closed:
            status = ItemStatus.CLOSED
        elif blocked_by:
            status = ItemStatus.BLOCKED
        else:
            status = ItemStatus.READY

        if blocked_by:
            logger.debug("%s blocked by %s", item.id, ", ".join(str(ref) for ref in blocked_by))

        resolved = ResolvedItem(
            item=item,
            status=status,
            dependencies=dependencies,
            blocked_by=blocked_by,
            priority=priority,
            priority_score=priority_score(priority),
            is_leaf=not open_children,
            sub_issue_numbers=list(links.children),
            parent_issue_number=links.parent,
        )
        return DagNode(
            id=item.id,
            resolved=resolved,
            depends_on=[self._node_ids.get(dep.key, str(dep)) for dep in dependencies],
        )

    def _is_blocking(self, ref: DependencyRef) -> bool:
        """A link blocks unless the referenced item is known to be closed."""
        cached = self._state_cache.get(ref.key)
        if cached is not None:
            return cached != ItemState.CLOSED
        try:
            fetched = self.client.fetch_item(ref.owner, ref.repo, ref.number)
        except Exception as exc:  # noqa: BLE001 - unknown state is treated as blocking.
            logger.warning("Could not fetch %s, assuming it is blocking: %s", ref, exc)
            self._state_cache[ref.key] = ItemState.OPEN
            return True
        if fetched is None:
            logger.warning("Referenced item %s does not exist, assuming it is blocking", ref)
            self._state_cache[ref.key] = ItemState.OPEN
            return True
        self._state_cache[ref.key] = fetched.state
        return fetched.state != ItemState.CLOSED

    def _fetch_links(self, item: WorkItem) -> Hierarchy | None:
        try:
            children = self.client.fetch_children(item.owner, item.repo, item.number)
            parent = self.client.fetch_parent(item.owner, item.repo, item.number)
        except Exception as exc:  # noqa: BLE001 - enrichment is best effort per item.
            logger.warning("Hierarchy lookup failed for %s, using links carried by the item: %s", item.id, exc)
            return None
        return Hierarchy(children=list(children or []), parent=parent)

    def _load_hierarchy(self, items: Sequence[WorkItem]) -> dict[str, Hierarchy | None]:
        """Fetch children and parent for every item in parallel worker threads.

        Safe to call with or without a running event loop. A failed lookup maps the item
        to None so the links already carried by the item are used instead.
        """
        if not items:
            return {}
        links: dict[str, Hierarchy | None] = {}
        with ThreadPoolExecutor(max_workers=len(items)) as executor:
            futures = {executor.submit(self._fetch_links, item): item for item in items}
            for future in as_completed(futures):
                links[futures[future].id] = future.result()
        return links

    # ------------------------------------------------------------------
    # Cycle detection
    # ------------------------------------------------------------------

    def detect_cycles(self) -> list[CycleInfo]:
        """Report cycles among in-graph ``depends_on`` edges.

        One report per back edge met during a single depth-first pass; this is not an
        enumeration of every elementary cycle.
        """
        cycles: list[CycleInfo] = []
        visited: set[str] = set()
        on_stack: set[str] = set()
        path: list[str] = []

        def visit(node_id: str) -> None:
            if node_id in on_stack:
                members = path[path.index(node_id):]
                cycles.append(
                    CycleInfo(
                        has_cycle=True,
                        cycle_nodes=members,
                        description="Circular dependency detected: " + " -> ".join([*members, node_id]),
                    )
                )
                return
            if node_id in visited:
                return
            visited.add(node_id)
            on_stack.add(node_id)
            path.append(node_id)
            for dep_id in self.nodes[node_id].depends_on:
                if dep_id in self.nodes:
                    visit(dep_id)
            path.pop()
            on_stack.discard(node_id)

        for node_id in list(self.nodes):
            if node_id not in visited:
                visit(node_id)
        return cycles

    # ------------------------------------------------------------------
    # Partitions
    # ------------------------------------------------------------------

    def get_node(self, node_id: str) -> DagNode | None:
        return self.nodes.get(node_id)

    def ready_leaves(self) -> list[ResolvedItem]:
        return [
            node.resolved
            for node in self.nodes.values()
            if node.resolved.status == ItemStatus.READY and node.resolved.is_leaf
        ]

    def blocked(self) -> list[ResolvedItem]:
        return [
            node.resolved
            for node in self.nodes.values()
            if node.resolved.status == ItemStatus.BLOCKED and node.resolved.is_leaf
        ]

    def parents(self) -> list[ResolvedItem]:
        return [node.resolved for node in self.nodes.values() if not node.resolved.is_leaf]
