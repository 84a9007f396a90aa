from __future__ import annotations

import io
import json
import urllib.error
import urllib.request
from email.message import Message
from typing import Any

import pytest

from issue_flow.errors import DispatchError, DispatchErrorCode
from issue_flow.github_client import GitHubClient
from issue_flow.models import ItemState
from issue_flow.settings import DispatchConfig, RuntimeSettings


def _headers(values: dict[str, str] | None = None) -> Message:
    message = Message()
    for key, value in (values or {}).items():
        message[key] = value
    return message


class _FakeResponse:
    def __init__(self, payload: Any, headers: dict[str, str] | None = None) -> None:
        self._raw = json.dumps(payload).encode("utf-8")
        self.headers = _headers(headers)

    def read(self) -> bytes:
        return self._raw

    def __enter__(self) -> "_FakeResponse":
        return self

    def __exit__(self, *args: object) -> None:
        return None


def _http_error(url: str, status: int, body: str = "", headers: dict[str, str] | None = None) -> urllib.error.HTTPError:
    return urllib.error.HTTPError(url, status, "error", _headers(headers), io.BytesIO(body.encode("utf-8")))


class _Transport:
    """Replays queued responses and records the requests that consumed them."""

    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.requests: list[urllib.request.Request] = []

    def __call__(self, request: urllib.request.Request, timeout: float | None = None) -> _FakeResponse:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response

    def graphql_variables(self, index: int) -> dict[str, Any]:
        return json.loads(self.requests[index].data)["variables"]


@pytest.fixture
def client() -> GitHubClient:
    return GitHubClient(token="t0k", owner="acme", repo="app", api_url="https://gh.test/", graphql_url="https://gh.test/graphql")


def _install(monkeypatch: pytest.MonkeyPatch, *responses: Any) -> _Transport:
    transport = _Transport(*responses)
    monkeypatch.setattr(urllib.request, "urlopen", transport)
    return transport


def _issue(number: int, **extra: Any) -> dict[str, Any]:
    payload = {
        "number": number,
        "title": f"Issue {number}",
        "body": None,
        "state": "open",
        "labels": [{"name": "queue"}],
        "created_at": "2024-01-01T00:00:00Z",
        "updated_at": "2024-01-02T00:00:00Z",
        "html_url": f"https://github.com/acme/app/issues/{number}",
    }
    payload.update(extra)
    return payload


def test_fetch_items_by_label_follows_pagination_and_skips_pull_requests(
    monkeypatch: pytest.MonkeyPatch, client: GitHubClient
) -> None:
    next_link = '<https://gh.test/repos/acme/app/issues?page=2>; rel="next", <https://gh.test/repos/acme/app/issues?page=2>; rel="last"'
    transport = _install(
        monkeypatch,
        _FakeResponse([_issue(1), _issue(2, pull_request={"url": "x"})], {"Link": next_link}),
        _FakeResponse([_issue(3, state="closed")]),
    )

    items = client.fetch_items_by_label("queue")

    assert [item.number for item in items] == [1, 3]
    assert items[0].body == ""
    assert items[0].labels == ["queue"]
    assert items[1].state == ItemState.CLOSED
    assert "labels=queue" in transport.requests[0].full_url
    assert "state=all" in transport.requests[0].full_url
    assert transport.requests[1].full_url == "https://gh.test/repos/acme/app/issues?page=2"
    assert transport.requests[0].get_header("Authorization") == "Bearer t0k"


def test_fetch_item_returns_none_when_missing(monkeypatch: pytest.MonkeyPatch, client: GitHubClient) -> None:
    _install(monkeypatch, _http_error("https://gh.test/repos/o/r/issues/5", 404, '{"message":"Not Found"}'))
    assert client.fetch_item("o", "r", 5) is None


def test_fetch_item_uses_requested_repository(monkeypatch: pytest.MonkeyPatch, client: GitHubClient) -> None:
    _install(monkeypatch, _FakeResponse(_issue(7, state="closed")))
    item = client.fetch_item("other", "lib", 7)
    assert item is not None
    assert item.id == "other/lib#7"
    assert item.is_closed


@pytest.mark.parametrize(
    ("status", "headers", "code"),
    [
        (401, {}, DispatchErrorCode.GITHUB_AUTH_ERROR),
        (403, {"X-RateLimit-Remaining": "12"}, DispatchErrorCode.GITHUB_AUTH_ERROR),
        (403, {"X-RateLimit-Remaining": "0", "X-RateLimit-Reset": "1700000000"}, DispatchErrorCode.GITHUB_RATE_LIMIT),
        (429, {}, DispatchErrorCode.GITHUB_RATE_LIMIT),
        (500, {}, DispatchErrorCode.GITHUB_API_ERROR),
    ],
)
def test_http_errors_map_to_dispatch_codes(
    monkeypatch: pytest.MonkeyPatch,
    client: GitHubClient,
    status: int,
    headers: dict[str, str],
    code: DispatchErrorCode,
) -> None:
    _install(monkeypatch, _http_error("https://gh.test/x", status, "upstream said no", headers))
    with pytest.raises(DispatchError) as exc_info:
        client.fetch_items_by_label()
    error = exc_info.value
    assert error.code == code
    assert error.details["status"] == status
    assert error.details["body"] == "upstream said no"


def test_rate_limit_error_carries_reset_time(monkeypatch: pytest.MonkeyPatch, client: GitHubClient) -> None:
    _install(
        monkeypatch,
        _http_error("https://gh.test/x", 403, "", {"X-RateLimit-Remaining": "0", "X-RateLimit-Reset": "1700000000"}),
    )
    with pytest.raises(DispatchError) as exc_info:
        client.fetch_items_by_label()
    assert exc_info.value.details["reset_time"] == "2023-11-14T22:13:20+00:00"


def test_network_failure_is_api_error(monkeypatch: pytest.MonkeyPatch, client: GitHubClient) -> None:
    _install(monkeypatch, urllib.error.URLError("connection refused"))
    with pytest.raises(DispatchError) as exc_info:
        client.fetch_item("acme", "app", 1)
    assert exc_info.value.code == DispatchErrorCode.GITHUB_API_ERROR


def test_fetch_children_and_parent(monkeypatch: pytest.MonkeyPatch, client: GitHubClient) -> None:
    transport = _install(
        monkeypatch,
        _FakeResponse({"data": {"repository": {"issue": {"subIssues": {"nodes": [{"number": 4}, {"number": 6}]}}}}}),
        _FakeResponse({"data": {"repository": {"issue": {"parent": {"number": 2}}}}}),
        _FakeResponse({"data": {"repository": {"issue": {"parent": None}}}}),
    )

    assert client.fetch_children("acme", "app", 3) == [4, 6]
    assert client.fetch_parent("acme", "app", 3) == 2
    assert client.fetch_parent("acme", "app", 2) is None
    assert transport.graphql_variables(0) == {"owner": "acme", "repo": "app", "number": 3}
    assert transport.requests[0].full_url == "https://gh.test/graphql"


def test_graphql_errors_without_data_raise(monkeypatch: pytest.MonkeyPatch, client: GitHubClient) -> None:
    _install(monkeypatch, _FakeResponse({"data": None, "errors": [{"type": "NOT_FOUND", "message": "nope"}]}))
    with pytest.raises(DispatchError) as exc_info:
        client.fetch_children("acme", "app", 3)
    assert exc_info.value.code == DispatchErrorCode.GITHUB_NOT_FOUND


def _project_node(item_id: str, number: int, status: str, priority: str | None = None) -> dict[str, Any]:
    field_values = [{"name": status, "field": {"name": "Status"}}]
    if priority is not None:
        field_values.append({"name": priority, "field": {"name": "Priority"}})
    return {
        "id": item_id,
        "fieldValues": {"nodes": field_values},
        "content": {
            "__typename": "Issue",
            "number": number,
            "title": f"Issue {number}",
            "body": "Depends on #1",
            "state": "OPEN",
            "url": f"https://github.com/acme/app/issues/{number}",
            "createdAt": "2024-01-01T00:00:00Z",
            "updatedAt": None,
            "labels": {"nodes": [{"name": "feature"}]},
            "repository": {"name": "app", "owner": {"login": "acme"}},
        },
    }


def test_fetch_project_items_filters_status_and_maps_priority(
    monkeypatch: pytest.MonkeyPatch, client: GitHubClient
) -> None:
    page = {
        "pageInfo": {"hasNextPage": False, "endCursor": None},
        "nodes": [
            _project_node("PVTI_1", 10, "Ready", "🔥 P0"),
            _project_node("PVTI_2", 11, "Done", "High"),
            _project_node("PVTI_3", 12, "ready"),
            {"id": "PVTI_4", "fieldValues": {"nodes": []}, "content": {"__typename": "DraftIssue"}},
        ],
    }
    _install(
        monkeypatch,
        _FakeResponse({"data": {"organization": None}, "errors": [{"type": "NOT_FOUND", "message": "no org"}]}),
        _FakeResponse({"data": {"user": {"projectV2": {"items": page}}}}),
    )

    items = client.fetch_project_items("acme", 3, status="Ready")

    assert [item.number for item in items] == [10, 12]
    assert items[0].project_item_id == "PVTI_1"
    assert items[0].labels == ["feature", "priority:critical"]
    assert items[1].labels == ["feature"]
    assert items[0].body == "Depends on #1"


def test_set_project_status_resolves_option_once(monkeypatch: pytest.MonkeyPatch, client: GitHubClient) -> None:
    field = {
        "data": {
            "organization": {
                "projectV2": {
                    "id": "PVT_9",
                    "field": {"id": "FIELD_1", "options": [{"id": "OPT_R", "name": "Ready"}, {"id": "OPT_P", "name": "In Progress"}]},
                }
            }
        }
    }
    mutation_ok = {"data": {"updateProjectV2ItemFieldValue": {"projectV2Item": {"id": "PVTI_1"}}}}
    transport = _install(monkeypatch, _FakeResponse(field), _FakeResponse(mutation_ok), _FakeResponse(mutation_ok))

    client.set_project_status("acme", 3, "PVTI_1", "In Progress")
    client.set_project_status("acme", 3, "PVTI_2", "in progress")

    assert len(transport.requests) == 3
    assert transport.graphql_variables(1) == {"project": "PVT_9", "item": "PVTI_1", "field": "FIELD_1", "option": "OPT_P"}
    assert transport.graphql_variables(2)["item"] == "PVTI_2"

    with pytest.raises(DispatchError) as exc_info:
        client.set_project_status("acme", 3, "PVTI_3", "Shipped")
    assert exc_info.value.code == DispatchErrorCode.INVALID_CONFIG


def test_from_config_uses_runtime_settings() -> None:
    config = DispatchConfig(token="abc", owner="acme", repo="app")
    settings = RuntimeSettings(github_api_url="https://ghe.test/api/v3", github_graphql_url="https://ghe.test/api/graphql", http_timeout_seconds=5)
    client = GitHubClient.from_config(config, settings)
    assert client.api_url == "https://ghe.test/api/v3"
    assert client.graphql_url == "https://ghe.test/api/graphql"
    assert client.timeout == 5


def test_client_requires_token() -> None:
    with pytest.raises(ValueError):
        GitHubClient(token="", owner="acme", repo="app")
