from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, replace
from pathlib import Path

from .errors import DispatchError, DispatchErrorCode

SOURCE_CHOICES = ("label", "project")


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    state_dir: str = ".issue_flow/state"
    max_retries: int = 3
    queue_label: str = "queue"
    github_api_url: str = "https://api.github.com"
    github_graphql_url: str = "https://api.github.com/graphql"
    http_timeout_seconds: int = 30
    llm_model: str = "gpt-4o-mini"

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            state_dir=os.getenv("ISSUE_FLOW_STATE_DIR", ".issue_flow/state"),
            max_retries=_get_env_int("ISSUE_FLOW_MAX_RETRIES", default=3, minimum=0, maximum=100),
            queue_label=os.getenv("ISSUE_FLOW_QUEUE_LABEL", "queue"),
            github_api_url=os.getenv("GITHUB_API_URL", "https://api.github.com"),
            github_graphql_url=os.getenv("GITHUB_GRAPHQL_URL", "https://api.github.com/graphql"),
            http_timeout_seconds=_get_env_int("ISSUE_FLOW_HTTP_TIMEOUT", default=30, minimum=1, maximum=600),
            llm_model=os.getenv("ISSUE_FLOW_LLM_MODEL", "gpt-4o-mini"),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        if not self.state_dir.strip():
            raise ValueError("ISSUE_FLOW_STATE_DIR must be non-empty")
        if not self.queue_label.strip():
            raise ValueError("ISSUE_FLOW_QUEUE_LABEL must be non-empty")
        llm_model = self.llm_model.strip()
        if not llm_model:
            raise ValueError("ISSUE_FLOW_LLM_MODEL must be non-empty")
        for name, url in (("GITHUB_API_URL", self.github_api_url), ("GITHUB_GRAPHQL_URL", self.github_graphql_url)):
            if not url.startswith(("http://", "https://")):
                raise ValueError(f"{name} must be an http(s) URL, got: {url!r}")
        return replace(
            self,
            queue_label=self.queue_label.strip(),
            github_api_url=self.github_api_url.rstrip("/"),
            llm_model=llm_model,
        )

    def state_path(self, root: Path | None = None) -> Path:
        path = Path(self.state_dir)
        if path.is_absolute():
            return path
        return (root if root is not None else Path.cwd()) / path


@dataclass(frozen=True)
class DispatchConfig:
    """Resolved configuration for one dispatch run."""

    token: str
    owner: str
    repo: str
    source: str = "label"
    label: str = "queue"
    project_owner: str | None = None
    project_number: int | None = None
    ready_status: str = "Ready"
    in_progress_status: str = "In Progress"
    priority_field: str = "Priority"
    max_concurrent: int | None = None
    dry_run: bool = False
    verbose: bool = False
    output_file: str | None = None

    @property
    def repository(self) -> str:
        return f"{self.owner}/{self.repo}"


def parse_positive_int(value: str | int | None) -> int | None:
    """Parse a numeric flag permissively: non-numeric or non-positive input yields None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    try:
        parsed = int(str(value).strip())
    except ValueError:
        return None
    return parsed if parsed > 0 else None


def build_dispatch_config(
    *,
    token: str | None = None,
    owner: str | None = None,
    repo: str | None = None,
    source: str = "label",
    label: str | None = None,
    project_owner: str | None = None,
    project_number: str | int | None = None,
    ready_status: str | None = None,
    in_progress_status: str | None = None,
    priority_field: str | None = None,
    max_concurrent: str | int | None = None,
    dry_run: bool = False,
    verbose: bool = False,
    output_file: str | None = None,
    env: Mapping[str, str] | None = None,
    settings: RuntimeSettings | None = None,
) -> DispatchConfig:
    """Resolve dispatch configuration from explicit values, then the environment.

    Token, owner and repo fall back to ``GITHUB_TOKEN`` and ``GITHUB_REPOSITORY``
    (``owner/repo``); owner may also come from ``GITHUB_REPOSITORY_OWNER``.

    Raises:
        DispatchError: ``INVALID_CONFIG`` when a required value is missing or the source is
            unknown. Raised before any network access.
    """
    environ = os.environ if env is None else env
    runtime = settings if settings is not None else RuntimeSettings()

    env_owner: str | None = None
    env_repo: str | None = None
    repository = (environ.get("GITHUB_REPOSITORY") or "").strip()
    if repository:
        env_owner, _, env_repo = repository.partition("/")
        env_repo = env_repo or None
    env_owner = env_owner or (environ.get("GITHUB_REPOSITORY_OWNER") or "").strip() or None

    resolved_token = (token or environ.get("GITHUB_TOKEN") or "").strip()
    resolved_owner = (owner or env_owner or "").strip()
    resolved_repo = (repo or env_repo or "").strip()

    missing = [
        name
        for name, value in (("token", resolved_token), ("owner", resolved_owner), ("repo", resolved_repo))
        if not value
    ]
    if missing:
        raise DispatchError(
            f"Missing required configuration: {', '.join(missing)}. "
            "Pass --token/--owner/--repo or set GITHUB_TOKEN and GITHUB_REPOSITORY.",
            DispatchErrorCode.INVALID_CONFIG,
            {"missing": missing},
        )

    if source not in SOURCE_CHOICES:
        raise DispatchError(
            f"Unknown source {source!r}; expected one of: {', '.join(SOURCE_CHOICES)}",
            DispatchErrorCode.INVALID_CONFIG,
            {"source": source},
        )

    resolved_project_number = parse_positive_int(project_number)
    resolved_project_owner = (project_owner or "").strip() or None
    if source == "project":
        if resolved_project_owner is None:
            resolved_project_owner = resolved_owner
        if resolved_project_number is None:
            raise DispatchError(
                "--project-number is required when --source project is used",
                DispatchErrorCode.INVALID_CONFIG,
                {"source": source},
            )

    return DispatchConfig(
        token=resolved_token,
        owner=resolved_owner,
        repo=resolved_repo,
        source=source,
        label=(label or runtime.queue_label).strip(),
        project_owner=resolved_project_owner,
        project_number=resolved_project_number,
        ready_status=ready_status or "Ready",
        in_progress_status=in_progress_status or "In Progress",
        priority_field=priority_field or "Priority",
        max_concurrent=parse_positive_int(max_concurrent),
        dry_run=dry_run,
        verbose=verbose,
        output_file=output_file,
    )


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed
