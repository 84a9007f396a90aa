"""GitHub tracker client used by the dispatcher.

REST calls cover issue listing and lookup; GraphQL covers sub-issue hierarchy and
ProjectV2 boards. Every failure is surfaced as a ``DispatchError`` whose ``details``
carry the HTTP status and raw response body.
"""

from __future__ import annotations

import json
import logging
import re
import urllib.error
import urllib.parse
import urllib.request
from datetime import UTC, datetime
from email.message import Message
from typing import Any

from .errors import DispatchError, DispatchErrorCode
from .models import ItemState, PriorityLevel, WorkItem
from .scheduling import normalize_priority
from .settings import DispatchConfig, RuntimeSettings

logger = logging.getLogger(__name__)

_PER_PAGE = 100
_BODY_PREVIEW_CHARS = 2_000
_LINK_RE = re.compile(r'<([^>]+)>;\s*rel="([^"]+)"')

_SUB_ISSUES_QUERY = """
query($owner: String!, $repo: String!, $number: Int!) {
  repository(owner: $owner, name: $repo) {
    issue(number: $number) {
      subIssues(first: 100) { nodes { number } }
    }
  }
}
"""

_PARENT_QUERY = """
query($owner: String!, $repo: String!, $number: Int!) {
  repository(owner: $owner, name: $repo) {
    issue(number: $number) {
      parent { number }
    }
  }
}
"""

_PROJECT_ITEMS_QUERY = """
query($owner: String!, $number: Int!, $cursor: String) {
  __OWNER_KIND__(login: $owner) {
    projectV2(number: $number) {
      items(first: 100, after: $cursor) {
        pageInfo { hasNextPage endCursor }
        nodes {
          id
          fieldValues(first: 30) {
            nodes {
              ... on ProjectV2ItemFieldSingleSelectValue {
                name
                field { ... on ProjectV2FieldCommon { name } }
              }
              ... on ProjectV2ItemFieldTextValue {
                text
                field { ... on ProjectV2FieldCommon { name } }
              }
            }
          }
          content {
            __typename
            ... on Issue {
              number
              title
              body
              state
              url
              createdAt
              updatedAt
              labels(first: 50) { nodes { name } }
              repository { name owner { login } }
            }
          }
        }
      }
    }
  }
}
"""

_PROJECT_STATUS_FIELD_QUERY = """
query($owner: String!, $number: Int!) {
  __OWNER_KIND__(login: $owner) {
    projectV2(number: $number) {
      id
      field(name: "Status") {
        ... on ProjectV2SingleSelectField { id options { id name } }
      }
    }
  }
}
"""

_SET_STATUS_MUTATION = """
mutation($project: ID!, $item: ID!, $field: ID!, $option: String!) {
  updateProjectV2ItemFieldValue(
    input: {projectId: $project, itemId: $item, fieldId: $field, value: {singleSelectOptionId: $option}}
  ) {
    projectV2Item { id }
  }
}
"""


def _error_from_http(status: int, headers: Message | None, body: str, url: str) -> DispatchError:
    details: dict[str, Any] = {"status": status, "body": body, "url": url}
    remaining = headers.get("X-RateLimit-Remaining") if headers is not None else None
    if status == 429 or (status == 403 and remaining == "0"):
        reset_raw = headers.get("X-RateLimit-Reset") if headers is not None else None
        reset_at: str | None = None
        if reset_raw and reset_raw.isdigit():
            reset_at = datetime.fromtimestamp(int(reset_raw), tz=UTC).isoformat()
        details["reset_time"] = reset_at
        return DispatchError(
            f"GitHub rate limit exceeded. Resets at {reset_at or 'unknown'}",
            DispatchErrorCode.GITHUB_RATE_LIMIT,
            details,
        )
    if status in (401, 403):
        return DispatchError(
            "GitHub authentication failed. Check your token.",
            DispatchErrorCode.GITHUB_AUTH_ERROR,
            details,
        )
    if status == 404:
        return DispatchError(f"Resource not found: {url}", DispatchErrorCode.GITHUB_NOT_FOUND, details)
    return DispatchError(f"GitHub API error: HTTP {status} from {url}", DispatchErrorCode.GITHUB_API_ERROR, details)


def _parse_link_header(value: str | None) -> dict[str, str]:
    if not value:
        return {}
    return {rel: link for link, rel in _LINK_RE.findall(value)}


class GitHubClient:
    """Thin GitHub REST/GraphQL client for issues, sub-issues and project boards."""

    def __init__(
        self,
        *,
        token: str,
        owner: str,
        repo: str,
        api_url: str = "https://api.github.com",
        graphql_url: str = "https://api.github.com/graphql",
        timeout: int = 30,
    ) -> None:
        if not token:
            raise ValueError("token must be non-empty")
        self.token = token
        self.owner = owner
        self.repo = repo
        self.api_url = api_url.rstrip("/")
        self.graphql_url = graphql_url
        self.timeout = timeout
        self._status_fields: dict[tuple[str, int], tuple[str, str, dict[str, str]]] = {}

    @classmethod
    def from_config(cls, config: DispatchConfig, settings: RuntimeSettings | None = None) -> "GitHubClient":
        runtime = settings if settings is not None else RuntimeSettings.from_env()
        return cls(
            token=config.token,
            owner=config.owner,
            repo=config.repo,
            api_url=runtime.github_api_url,
            graphql_url=runtime.github_graphql_url,
            timeout=runtime.http_timeout_seconds,
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(self, method: str, url: str, payload: dict[str, Any] | None = None) -> tuple[Any, Message]:
        """Send one authenticated request and return the decoded JSON body and headers.

        Raises:
            DispatchError: Mapped from the HTTP status, a transport failure, or a
                non-JSON response body.
        """
        headers = {
            "Accept": "application/vnd.github+json",
            "Authorization": f"Bearer {self.token}",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "issue-flow",
        }
        data: bytes | None = None
        if payload is not None:
            headers["Content-Type"] = "application/json"
            data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(url, method=method, headers=headers, data=data)
        logger.debug("%s %s", method, url)
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                raw = response.read().decode("utf-8")
                return json.loads(raw) if raw else None, response.headers
        except urllib.error.HTTPError as exc:
            body = ""
            try:
                body = exc.read().decode("utf-8", errors="replace")[:_BODY_PREVIEW_CHARS]
            except OSError:
                pass
            log = logger.debug if exc.code == 404 else logger.error
            log("HTTP %d from %s: %s", exc.code, url, body)
            raise _error_from_http(exc.code, exc.headers, body, url) from exc
        except urllib.error.URLError as exc:
            logger.error("URL error reaching %s: %s", url, exc.reason)
            raise DispatchError(
                f"Failed to reach {url}: {exc.reason}",
                DispatchErrorCode.GITHUB_API_ERROR,
                {"status": None, "body": "", "url": url},
            ) from exc
        except json.JSONDecodeError as exc:
            logger.error("Invalid JSON response from %s", url)
            raise DispatchError(
                f"Invalid JSON response from {url}",
                DispatchErrorCode.PARSE_ERROR,
                {"status": None, "body": exc.doc[:_BODY_PREVIEW_CHARS], "url": url},
            ) from exc

    def _graphql(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        payload, _ = self._request("POST", self.graphql_url, {"query": query, "variables": variables})
        if not isinstance(payload, dict):
            raise DispatchError(
                "GraphQL response is not an object",
                DispatchErrorCode.PARSE_ERROR,
                {"status": 200, "body": str(payload)[:_BODY_PREVIEW_CHARS]},
            )
        errors = payload.get("errors") or []
        data = payload.get("data")
        if data is None:
            body = json.dumps(errors)[:_BODY_PREVIEW_CHARS]
            code = DispatchErrorCode.GITHUB_API_ERROR
            if any(isinstance(err, dict) and err.get("type") == "NOT_FOUND" for err in errors):
                code = DispatchErrorCode.GITHUB_NOT_FOUND
            raise DispatchError(f"GraphQL query failed: {body}", code, {"status": 200, "body": body})
        if errors:
            logger.debug("GraphQL returned partial data with errors: %s", errors)
        return data

    # ------------------------------------------------------------------
    # Issues
    # ------------------------------------------------------------------

    def _to_work_item(self, data: dict[str, Any], owner: str | None = None, repo: str | None = None) -> WorkItem:
        labels = [label if isinstance(label, str) else label.get("name", "") for label in data.get("labels", [])]
        return WorkItem(
            owner=owner or self.owner,
            repo=repo or self.repo,
            number=int(data["number"]),
            title=data.get("title") or "",
            body=data.get("body"),
            state=ItemState(str(data.get("state", "open")).lower()),
            labels=[label for label in labels if label],
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
            url=data.get("html_url") or "",
        )

    def fetch_items_by_label(self, label: str = "queue") -> list[WorkItem]:
        """Fetch every issue (open and closed) carrying ``label``, following pagination."""
        query = urllib.parse.urlencode({"labels": label, "state": "all", "per_page": _PER_PAGE})
        url: str | None = f"{self.api_url}/repos/{self.owner}/{self.repo}/issues?{query}"
        items: list[WorkItem] = []
        page = 1
        while url is not None:
            payload, headers = self._request("GET", url)
            if not isinstance(payload, list):
                raise DispatchError(
                    f"Expected a list of issues from {url}",
                    DispatchErrorCode.PARSE_ERROR,
                    {"status": 200, "body": str(payload)[:_BODY_PREVIEW_CHARS]},
                )
            for entry in payload:
                if "pull_request" in entry:
                    continue
                items.append(self._to_work_item(entry))
            logger.debug("Page %d: fetched %d issues", page, len(payload))
            url = _parse_link_header(headers.get("Link")).get("next")
            page += 1
        logger.info("Fetched %d issues with label %r from %s/%s", len(items), label, self.owner, self.repo)
        return items

    def fetch_item(self, owner: str, repo: str, number: int) -> WorkItem | None:
        """Fetch one issue; returns None when it does not exist."""
        url = f"{self.api_url}/repos/{owner}/{repo}/issues/{number}"
        try:
            payload, _ = self._request("GET", url)
        except DispatchError as exc:
            if exc.code == DispatchErrorCode.GITHUB_NOT_FOUND:
                logger.debug("Issue not found: %s/%s#%d", owner, repo, number)
                return None
            raise
        return self._to_work_item(payload, owner, repo)

    def fetch_children(self, owner: str, repo: str, number: int) -> list[int]:
        data = self._graphql(_SUB_ISSUES_QUERY, {"owner": owner, "repo": repo, "number": number})
        issue = ((data.get("repository") or {}).get("issue")) or {}
        nodes = (issue.get("subIssues") or {}).get("nodes") or []
        return [int(node["number"]) for node in nodes if node and "number" in node]

    def fetch_parent(self, owner: str, repo: str, number: int) -> int | None:
        data = self._graphql(_PARENT_QUERY, {"owner": owner, "repo": repo, "number": number})
        issue = ((data.get("repository") or {}).get("issue")) or {}
        parent = issue.get("parent")
        return int(parent["number"]) if parent else None

    # ------------------------------------------------------------------
    # Project boards
    # ------------------------------------------------------------------

    def _project_query(self, template: str, variables: dict[str, Any]) -> dict[str, Any]:
        """Run a ProjectV2 query against an organization owner, then a user owner."""
        for kind in ("organization", "user"):
            try:
                data = self._graphql(template.replace("__OWNER_KIND__", kind), variables)
            except DispatchError as exc:
                if exc.code == DispatchErrorCode.GITHUB_NOT_FOUND:
                    continue
                raise
            project = (data.get(kind) or {}).get("projectV2")
            if project is not None:
                return project
        raise DispatchError(
            f"Project {variables['owner']}#{variables['number']} not found",
            DispatchErrorCode.GITHUB_NOT_FOUND,
            {"status": 200, "body": ""},
        )

    def fetch_project_items(
        self,
        project_owner: str,
        project_number: int,
        *,
        status: str = "Ready",
        priority_field: str = "Priority",
    ) -> list[WorkItem]:
        """Fetch issues sitting in the ``status`` column of a ProjectV2 board.

        The board's priority field is folded into a synthetic ``priority:<level>`` label
        so the scheduler treats board and label priorities the same way.
        """
        items: list[WorkItem] = []
        cursor: str | None = None
        wanted_status = status.strip().lower()
        wanted_priority = priority_field.strip().lower()
        while True:
            project = self._project_query(
                _PROJECT_ITEMS_QUERY,
                {"owner": project_owner, "number": project_number, "cursor": cursor},
            )
            page = project.get("items") or {}
            for node in page.get("nodes") or []:
                content = (node or {}).get("content") or {}
                if content.get("__typename") != "Issue":
                    continue
                fields: dict[str, str] = {}
                for value in (node.get("fieldValues") or {}).get("nodes") or []:
                    if not value or not value.get("field"):
                        continue
                    text = value.get("name") if "name" in value else value.get("text")
                    if text is not None:
                        fields[str(value["field"].get("name", "")).lower()] = str(text)
                if fields.get("status", "").strip().lower() != wanted_status:
                    continue
                labels = [label["name"] for label in (content.get("labels") or {}).get("nodes") or [] if label]
                level = normalize_priority(fields.get(wanted_priority))
                if level != PriorityLevel.NONE:
                    labels.append(f"priority:{level.value}")
                repository = content.get("repository") or {}
                items.append(
                    WorkItem(
                        owner=(repository.get("owner") or {}).get("login") or self.owner,
                        repo=repository.get("name") or self.repo,
                        number=int(content["number"]),
                        title=content.get("title") or "",
                        body=content.get("body"),
                        state=ItemState.OPEN if str(content.get("state", "")).upper() == "OPEN" else ItemState.CLOSED,
                        labels=labels,
                        created_at=content.get("createdAt"),
                        updated_at=content.get("updatedAt"),
                        url=content.get("url") or "",
                        project_item_id=node.get("id"),
                    )
                )
            page_info = page.get("pageInfo") or {}
            if not page_info.get("hasNextPage"):
                break
            cursor = page_info.get("endCursor")
        logger.info(
            "Fetched %d items in status %r from project %s#%d", len(items), status, project_owner, project_number
        )
        return items

    def set_project_status(self, project_owner: str, project_number: int, item_id: str, status: str) -> None:
        """Move a board item to the ``status`` column."""
        cache_key = (project_owner, project_number)
        if cache_key not in self._status_fields:
            project = self._project_query(
                _PROJECT_STATUS_FIELD_QUERY,
                {"owner": project_owner, "number": project_number},
            )
            field = project.get("field") or {}
            if not field.get("id"):
                raise DispatchError(
                    f"Project {project_owner}#{project_number} has no single-select Status field",
                    DispatchErrorCode.INVALID_CONFIG,
                    {"status": 200, "body": ""},
                )
            options = {str(option["name"]).lower(): option["id"] for option in field.get("options") or []}
            self._status_fields[cache_key] = (project["id"], field["id"], options)

        project_id, field_id, options = self._status_fields[cache_key]
        option_id = options.get(status.strip().lower())
        if option_id is None:
            raise DispatchError(
                f"Status {status!r} is not an option of project {project_owner}#{project_number}",
                DispatchErrorCode.INVALID_CONFIG,
                {"status": 200, "body": "", "options": sorted(options)},
            )
        self._graphql(
            _SET_STATUS_MUTATION,
            {"project": project_id, "item": item_id, "field": field_id, "option": option_id},
        )
        logger.info("Set project item %s to status %r", item_id, status)
