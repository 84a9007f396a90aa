from __future__ import annotations

from typing import Any

import pytest

from issue_flow.errors import DispatchError, DispatchErrorCode
from issue_flow.models import WorkItem


def make_item(
    number: int,
    *,
    body: str = "",
    state: str = "open",
    labels: tuple[str, ...] | list[str] = (),
    created_at: str | None = "2024-01-01T00:00:00Z",
    owner: str = "acme",
    repo: str = "app",
    **extra: Any,
) -> WorkItem:
    return WorkItem(
        owner=owner,
        repo=repo,
        number=number,
        title=f"Item {number}",
        body=body,
        state=state,
        labels=list(labels),
        created_at=created_at,
        url=f"https://github.com/{owner}/{repo}/issues/{number}",
        **extra,
    )


class FakeTracker:
    """In-memory tracker with the same surface as GitHubClient."""

    def __init__(self) -> None:
        self.items: list[WorkItem] = []
        self.project_items: list[WorkItem] = []
        self.external: dict[tuple[str, str, int], WorkItem] = {}
        self.children: dict[int, list[int]] = {}
        self.parents: dict[int, int] = {}
        self.failing_hierarchy: set[int] = set()
        self.failing_lookups: set[int] = set()
        self.failing_status_updates: set[str] = set()
        self.status_updates: list[tuple[str, int, str, str]] = []
        self.fetched_labels: list[str] = []

    def fetch_items_by_label(self, label: str = "queue") -> list[WorkItem]:
        self.fetched_labels.append(label)
        return list(self.items)

    def fetch_project_items(
        self,
        project_owner: str,
        project_number: int,
        *,
        status: str = "Ready",
        priority_field: str = "Priority",
    ) -> list[WorkItem]:
        return list(self.project_items)

    def set_project_status(self, project_owner: str, project_number: int, item_id: str, status: str) -> None:
        if item_id in self.failing_status_updates:
            raise DispatchError("boom", DispatchErrorCode.GITHUB_API_ERROR, {"status": 502, "body": ""})
        self.status_updates.append((project_owner, project_number, item_id, status))

    def fetch_item(self, owner: str, repo: str, number: int) -> WorkItem | None:
        if number in self.failing_lookups:
            raise DispatchError("lookup failed", DispatchErrorCode.GITHUB_API_ERROR, {"status": 500, "body": ""})
        return self.external.get((owner, repo, number))

    def fetch_children(self, owner: str, repo: str, number: int) -> list[int]:
        if number in self.failing_hierarchy:
            raise DispatchError("graphql down", DispatchErrorCode.GITHUB_API_ERROR, {"status": 502, "body": ""})
        return list(self.children.get(number, []))

    def fetch_parent(self, owner: str, repo: str, number: int) -> int | None:
        if number in self.failing_hierarchy:
            raise DispatchError("graphql down", DispatchErrorCode.GITHUB_API_ERROR, {"status": 502, "body": ""})
        return self.parents.get(number)


@pytest.fixture
def tracker() -> FakeTracker:
    return FakeTracker()
