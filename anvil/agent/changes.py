"""Grouped file mutations with ordered apply and reverse-order rollback.

All storage effects go through ChangeManager.apply_change_set() and
rollback_change_set(). Nothing else writes storage.

Limitation: rollback is best-effort. It re-applies inverse operations;
it is not a transaction. A crash mid-apply or mid-rollback can leave
storage in a mixed state, and a failed inverse operation is reported
but not retried.
"""

from __future__ import annotations

import copy
import difflib
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Protocol
from uuid import uuid4

logger = logging.getLogger(__name__)


class ChangeType(StrEnum):
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"
    RENAME = "rename"

    @property
    def icon(self) -> str:
        return {"create": "+", "modify": "~", "delete": "-", "rename": "→"}[self.value]


@dataclass
class FileChange:
    id: str
    path: str
    type: ChangeType
    old_path: str | None = None  # renames only
    old_content: bytes = b""
    new_content: bytes = b""
    diff: str = ""
    description: str = ""
    applied: bool = False
    applied_at: datetime | None = None
    rolled_back: bool = False
    rolled_back_at: datetime | None = None

    def lines_changed(self) -> tuple[int, int]:
        """(added, removed) line counts from the diff."""
        added = removed = 0
        for line in self.diff.splitlines():
            if line.startswith("+++") or line.startswith("---"):
                continue
            if line.startswith("+"):
                added += 1
            elif line.startswith("-"):
                removed += 1
        return added, removed

    def to_dict(self) -> dict[str, object]:
        added, removed = self.lines_changed()
        return {
            "id": self.id,
            "path": self.path,
            "old_path": self.old_path,
            "type": str(self.type),
            "description": self.description,
            "diff": self.diff,
            "added": added,
            "removed": removed,
            "applied": self.applied,
            "rolled_back": self.rolled_back,
        }


@dataclass
class ChangeSet:
    id: str
    name: str
    description: str = ""
    changes: list[FileChange] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    applied_at: datetime | None = None
    rolled_back: bool = False

    def summary(self) -> str:
        total_added = total_removed = 0
        files = []
        for change in self.changes:
            added, removed = change.lines_changed()
            total_added += added
            total_removed += removed
            files.append(f"{change.type.icon} {change.path}")
        header = f"{self.name} ({len(self.changes)} files, +{total_added} -{total_removed})"
        return "\n".join([header, *files])

    def affected_files(self) -> list[str]:
        files = []
        for change in self.changes:
            files.append(change.path)
            if change.old_path:
                files.append(change.old_path)
        return files

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "changes": [c.to_dict() for c in self.changes],
            "created_at": self.created_at.isoformat(),
            "applied_at": self.applied_at.isoformat() if self.applied_at else None,
            "rolled_back": self.rolled_back,
        }


# ---------------------------------------------------------------------------
# Storage capability
# ---------------------------------------------------------------------------


class Storage(Protocol):
    """Where change sets land. Each operation raises OSError on failure."""

    def read(self, path: str) -> bytes: ...

    def exists(self, path: str) -> bool: ...

    def write(self, path: str, data: bytes) -> None: ...

    def delete(self, path: str) -> None: ...

    def rename(self, old_path: str, new_path: str) -> None: ...


class LocalStorage:
    """Storage rooted at a directory on the local filesystem.

    Relative paths resolve against ``root``; paths escaping it are refused.
    """

    def __init__(self, root: str | os.PathLike[str]) -> None:
        self.root = Path(root).expanduser().resolve()

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if target != self.root and self.root not in target.parents:
            raise PermissionError(f"path escapes workspace: {path}")
        return target

    def read(self, path: str) -> bytes:
        return self._resolve(path).read_bytes()

    def exists(self, path: str) -> bool:
        return self._resolve(path).exists()

    def write(self, path: str, data: bytes) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    def delete(self, path: str) -> None:
        self._resolve(path).unlink()

    def rename(self, old_path: str, new_path: str) -> None:
        target = self._resolve(new_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        self._resolve(old_path).rename(target)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ChangeSetError(Exception):
    """Base class for change-set failures."""


class NoChangeSetError(ChangeSetError):
    pass


class ChangeSetOpenError(ChangeSetError):
    pass


class ChangeApplyError(ChangeSetError):
    """A change failed to apply; earlier changes were rolled back."""

    def __init__(self, change: FileChange, cause: OSError, rollback_errors: list[str]) -> None:
        msg = f"failed to apply change {change.path}: {cause}"
        if rollback_errors:
            msg += f" (rollback incomplete: {'; '.join(rollback_errors)})"
        super().__init__(msg)
        self.change_id = change.id
        self.path = change.path
        self.rollback_errors = rollback_errors


class ChangeRollbackError(ChangeSetError):
    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


# ---------------------------------------------------------------------------
# Diffs
# ---------------------------------------------------------------------------


def _text(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


def unified_diff(path: str, old: bytes, new: bytes, *, created: bool = False, deleted: bool = False) -> str:
    lines = difflib.unified_diff(
        _text(old).splitlines(keepends=True),
        _text(new).splitlines(keepends=True),
        fromfile="/dev/null" if created else f"a/{path}",
        tofile="/dev/null" if deleted else f"b/{path}",
        n=3,
    )
    diff = "".join(line if line.endswith("\n") else line + "\n" for line in lines)
    return f"diff --git a/{path} b/{path}\n{diff}"


# ---------------------------------------------------------------------------
# ChangeManager
# ---------------------------------------------------------------------------


def _apply(storage: Storage, change: FileChange) -> None:
    if change.type in (ChangeType.CREATE, ChangeType.MODIFY):
        storage.write(change.path, change.new_content)
    elif change.type == ChangeType.DELETE:
        storage.delete(change.path)
    elif change.type == ChangeType.RENAME:
        storage.rename(change.old_path or "", change.path)


def _revert(storage: Storage, change: FileChange) -> None:
    if change.type == ChangeType.CREATE:
        storage.delete(change.path)
    elif change.type in (ChangeType.MODIFY, ChangeType.DELETE):
        storage.write(change.path, change.old_content)
    elif change.type == ChangeType.RENAME:
        storage.rename(change.path, change.old_path or "")


class ChangeManager:
    """One open change set at a time, plus an append-only history."""

    def __init__(self, storage: Storage) -> None:
        self._storage = storage
        self._lock = threading.Lock()
        self._current: ChangeSet | None = None
        self._history: list[ChangeSet] = []

    @property
    def storage(self) -> Storage:
        return self._storage

    def start_change_set(self, name: str, description: str = "") -> ChangeSet:
        with self._lock:
            if self._current is not None:
                raise ChangeSetOpenError(
                    f"change set {self._current.name!r} is still open; apply or discard it first"
                )
            self._current = ChangeSet(id=f"cs_{uuid4().hex[:12]}", name=name, description=description)
            return copy.deepcopy(self._current)

    def get_current_change_set(self) -> ChangeSet | None:
        with self._lock:
            return copy.deepcopy(self._current)

    def get_history(self) -> list[ChangeSet]:
        with self._lock:
            return copy.deepcopy(self._history)

    def add_file_create(self, path: str, content: bytes, description: str = "") -> FileChange:
        return self._add(
            path=path,
            type=ChangeType.CREATE,
            new_content=content,
            description=description,
            diff=unified_diff(path, b"", content, created=True),
        )

    def add_file_modify(
        self, path: str, old_content: bytes, new_content: bytes, description: str = ""
    ) -> FileChange:
        return self._add(
            path=path,
            type=ChangeType.MODIFY,
            old_content=old_content,
            new_content=new_content,
            description=description,
            diff=unified_diff(path, old_content, new_content),
        )

    def add_file_delete(self, path: str, old_content: bytes, description: str = "") -> FileChange:
        return self._add(
            path=path,
            type=ChangeType.DELETE,
            old_content=old_content,
            description=description,
            diff=unified_diff(path, old_content, b"", deleted=True),
        )

    def add_file_rename(self, old_path: str, new_path: str, description: str = "") -> FileChange:
        return self._add(
            path=new_path,
            old_path=old_path,
            type=ChangeType.RENAME,
            description=description,
            diff=f"rename {old_path} -> {new_path}",
        )

    def _add(self, **fields) -> FileChange:
        with self._lock:
            if self._current is None:
                self._current = ChangeSet(
                    id=f"cs_{uuid4().hex[:12]}",
                    name="Auto-generated",
                    description="Automatically created change set",
                )
            change = FileChange(id=f"change_{len(self._current.changes)}", **fields)
            self._current.changes.append(change)
            return copy.deepcopy(change)

    def apply_change_set(self) -> ChangeSet:
        """Apply the open set in order.

        On the first failure every change applied so far is reverted in
        reverse order and ChangeApplyError is raised; the set stays open
        and never reaches history.
        """
        with self._lock:
            cs = self._current
            if cs is None:
                raise NoChangeSetError("no active change set")

            for change in cs.changes:
                change.applied = False
                change.applied_at = None
                change.rolled_back = False
                change.rolled_back_at = None

            for index, change in enumerate(cs.changes):
                try:
                    _apply(self._storage, change)
                except OSError as e:
                    logger.warning("Change %s (%s) failed to apply: %s", change.id, change.path, e)
                    rollback_errors = self._revert_all(cs.changes[:index])
                    raise ChangeApplyError(change, e, rollback_errors) from e
                change.applied = True
                change.applied_at = datetime.now(UTC)

            cs.applied_at = datetime.now(UTC)
            self._history.append(cs)
            self._current = None
            logger.info("Applied change set %s (%d changes)", cs.name, len(cs.changes))
            return copy.deepcopy(cs)

    def rollback_change_set(self) -> ChangeSet:
        """Revert the most recently applied set."""
        with self._lock:
            if not self._history:
                raise NoChangeSetError("no change sets to rollback")
            cs = self._history[-1]
            if cs.rolled_back:
                raise ChangeRollbackError(f"change set {cs.name!r} already rolled back")

            errors = self._revert_all([c for c in cs.changes if c.applied and not c.rolled_back])
            if errors:
                raise ChangeRollbackError(
                    f"rollback of {cs.name!r} incomplete: {'; '.join(errors)}", errors
                )
            cs.rolled_back = True
            logger.info("Rolled back change set %s", cs.name)
            return copy.deepcopy(cs)

    def discard_current_change_set(self) -> bool:
        """Abandon the open set without touching storage."""
        with self._lock:
            discarded = self._current is not None
            self._current = None
            return discarded

    def preview_changes(self) -> str:
        with self._lock:
            cs = self._current
            if cs is None or not cs.changes:
                return "No pending changes"
            lines = [
                f"Change Set: {cs.name}",
                f"Description: {cs.description}",
                f"Files: {len(cs.changes)}",
                "",
            ]
            for i, change in enumerate(cs.changes, start=1):
                added, removed = change.lines_changed()
                lines.append(f"{i}. {change.type.icon} {change.path} (+{added} -{removed})")
                if change.description:
                    lines.append(f"   {change.description}")
            return "\n".join(lines)

    def _revert_all(self, changes: list[FileChange]) -> list[str]:
        """Revert ``changes`` newest-first. Returns error descriptions."""
        errors = []
        for change in reversed(changes):
            try:
                _revert(self._storage, change)
            except OSError as e:
                logger.warning("Rollback of %s (%s) failed: %s", change.id, change.path, e)
                errors.append(f"{change.path}: {e}")
                continue
            change.rolled_back = True
            change.rolled_back_at = datetime.now(UTC)
        return errors
