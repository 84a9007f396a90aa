from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from datetime import datetime

from .models import DependencyRef, PriorityLevel, ResolvedItem

PRIORITY_SCORES: dict[PriorityLevel, int] = {
    PriorityLevel.CRITICAL: 0,
    PriorityLevel.HIGH: 1,
    PriorityLevel.MEDIUM: 2,
    PriorityLevel.LOW: 3,
    PriorityLevel.NONE: 4,
}

_PRIORITY_LABEL_RE = re.compile(r"^\s*priority\s*:\s*(critical|high|medium|low)\s*$", re.IGNORECASE)

# Board field values seen in practice, mapped onto the label scale.
_BOARD_PRIORITY_ALIASES: dict[str, PriorityLevel] = {
    "critical": PriorityLevel.CRITICAL,
    "urgent": PriorityLevel.CRITICAL,
    "p0": PriorityLevel.CRITICAL,
    "high": PriorityLevel.HIGH,
    "p1": PriorityLevel.HIGH,
    "medium": PriorityLevel.MEDIUM,
    "normal": PriorityLevel.MEDIUM,
    "p2": PriorityLevel.MEDIUM,
    "low": PriorityLevel.LOW,
    "p3": PriorityLevel.LOW,
}


def extract_priority(labels: Iterable[str]) -> PriorityLevel:
    """Return the most urgent ``priority:<level>`` label present, or ``none``."""
    best = PriorityLevel.NONE
    for label in labels:
        match = _PRIORITY_LABEL_RE.match(label or "")
        if match is None:
            continue
        level = PriorityLevel(match.group(1).lower())
        if PRIORITY_SCORES[level] < PRIORITY_SCORES[best]:
            best = level
    return best


def normalize_priority(value: str | None) -> PriorityLevel:
    """Map a project-board priority field value to a priority level.

    Leading emoji or punctuation is ignored, so ``"🔥 Critical"`` and ``"P0 - urgent"``
    both resolve to ``critical``.
    """
    if not value:
        return PriorityLevel.NONE
    for token in re.findall(r"[a-z0-9]+", value.lower()):
        level = _BOARD_PRIORITY_ALIASES.get(token)
        if level is not None:
            return level
    return PriorityLevel.NONE


def priority_score(level: PriorityLevel) -> int:
    return PRIORITY_SCORES[level]


def _created_sort_key(item: ResolvedItem) -> tuple[int, float]:
    created: datetime | None = item.item.created_at
    if created is None:
        return (1, 0.0)
    return (0, created.timestamp())


def sort_by_priority(items: Sequence[ResolvedItem]) -> list[ResolvedItem]:
    """Order items by ascending priority score, oldest first within a score.

    Returns a new list; ``items`` is left untouched. Items without a creation time sort
    after dated items of the same score and keep their relative order.
    """
    return sorted(items, key=lambda item: (item.priority_score, _created_sort_key(item)))


def apply_max_concurrent(items: Sequence[ResolvedItem], cap: int | None) -> list[ResolvedItem]:
    """Sort by priority and keep at most ``cap`` items. ``None`` or ``cap <= 0`` means unlimited."""
    ordered = sort_by_priority(items)
    if cap is not None and cap > 0:
        return ordered[:cap]
    return ordered


def format_blocked_by(refs: Sequence[DependencyRef]) -> str:
    if not refs:
        return "none"
    return ", ".join(str(ref) for ref in refs)
