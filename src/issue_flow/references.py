"""Extraction of cross-item dependency references from issue bodies.

Recognized clauses (case-insensitive)::

    Depends on #12, #14
    Blocked by acme/api#7
    Requires https://github.com/acme/web/issues/3
    After #9.

A clause runs until the next sentence terminator or line break. Every reference inside a
clause is collected; bare ``#N`` references inherit the default owner and repository.
"""

from __future__ import annotations

import logging
import re

from .models import DependencyRef

logger = logging.getLogger(__name__)

_CLAUSE_RE = re.compile(
    r"\b(?:depends?\s+on|blocked?\s+by|requires?|after)\b(?P<clause>.*?)(?=[.!?](?:\s|$)|\n|\Z)",
    re.IGNORECASE,
)

_REFERENCE_RE = re.compile(
    r"(?:https?://)?(?:www\.)?github\.com/(?P<url_owner>[\w.-]+)/(?P<url_repo>[\w.-]+)/(?:issues|pull)/(?P<url_number>\d+)"
    r"|(?:(?:https?://)?(?:www\.)?github\.com/)?(?:(?P<owner>[\w.-]+)/(?P<repo>[\w.-]+))?#(?P<number>\d+)",
    re.IGNORECASE,
)


def parse_issue_references(text: str, default_owner: str, default_repo: str) -> list[DependencyRef]:
    """Return every issue reference in ``text`` in order of appearance, duplicates included."""
    refs: list[DependencyRef] = []
    for match in _REFERENCE_RE.finditer(text or ""):
        if match.group("url_number") is not None:
            refs.append(
                DependencyRef(
                    owner=match.group("url_owner"),
                    repo=match.group("url_repo"),
                    number=int(match.group("url_number")),
                )
            )
            continue
        owner = match.group("owner") or default_owner
        repo = match.group("repo") or default_repo
        refs.append(DependencyRef(owner=owner, repo=repo, number=int(match.group("number"))))
    return refs


def parse_dependencies(text: str | None, default_owner: str, default_repo: str) -> list[DependencyRef]:
    """Parse dependency declarations from free text.

    Args:
        text: Issue body. ``None`` and empty strings yield no dependencies.
        default_owner: Owner applied to bare ``#N`` references.
        default_repo: Repository applied to bare ``#N`` references.

    Returns:
        References de-duplicated by their case-insensitive ``owner/repo#N`` key, in the
        order they first appear.
    """
    if not text or not isinstance(text, str):
        return []

    dependencies: list[DependencyRef] = []
    seen: set[str] = set()
    for clause in _CLAUSE_RE.finditer(text):
        for ref in parse_issue_references(clause.group("clause"), default_owner, default_repo):
            if ref.key in seen:
                continue
            seen.add(ref.key)
            dependencies.append(ref)
    if dependencies:
        logger.debug("Parsed %d dependencies: %s", len(dependencies), ", ".join(str(ref) for ref in dependencies))
    return dependencies


def parse_reference(text: str, default_owner: str, default_repo: str) -> DependencyRef | None:
    refs = parse_issue_references(text, default_owner, default_repo)
    return refs[0] if refs else None


def format_reference(ref: DependencyRef) -> str:
    return str(ref)
