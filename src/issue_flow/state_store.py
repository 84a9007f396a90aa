from __future__ import annotations

import logging
import os
import re
from pathlib import Path

from pydantic import ValidationError

from .models import WorkflowState

logger = logging.getLogger(__name__)

_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9_-]")
_TMP_SUFFIX = ".tmp"


def sanitize_id(instance_id: str) -> str:
    """Replace every character outside ``[A-Za-z0-9_-]`` with ``_``.

    Distinct raw ids can map to the same file name (``a/b`` and ``a.b`` both become
    ``a_b``); callers should keep ids inside the safe set.
    """
    return _UNSAFE_ID_CHARS.sub("_", instance_id)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* atomically via ``<path>.tmp`` and ``os.replace``.

    A crash before the rename leaves the previously committed file untouched.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + _TMP_SUFFIX)
    try:
        with tmp_path.open("w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            tmp_path.unlink(missing_ok=True)
        except OSError:
            logger.warning("Could not remove temp file %s", tmp_path)
        raise


class WorkflowStateStore:
    """One JSON document per workflow instance under ``directory``."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def path_for(self, instance_id: str) -> Path:
        return self.directory / f"{sanitize_id(instance_id)}.json"

    def load(self, instance_id: str) -> WorkflowState | None:
        """Return the stored state, or None if it is missing or unreadable."""
        path = self.path_for(instance_id)
        if not path.is_file():
            return None
        try:
            text = path.read_text(encoding="utf-8")
            return WorkflowState.model_validate_json(text)
        except (OSError, UnicodeDecodeError, ValidationError) as exc:
            logger.error("Failed to load workflow state %s from %s: %s", instance_id, path, exc)
            return None

    def save(self, instance_id: str, state: WorkflowState) -> None:
        path = self.path_for(instance_id)
        _atomic_write_text(path, state.model_dump_json(indent=2))
        logger.debug("Saved workflow state %s (step=%s, status=%s)", instance_id, state.current_step, state.status.value)

    def delete(self, instance_id: str) -> None:
        self.path_for(instance_id).unlink(missing_ok=True)

    def list(self) -> list[str]:
        """Stored (sanitized) instance ids, sorted. Empty when the directory is absent."""
        if not self.directory.is_dir():
            return []
        return sorted(path.stem for path in self.directory.glob("*.json"))
