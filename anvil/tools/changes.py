"""Change-set tools: let the model stage, preview, apply and roll back edits.

Staging only records FileChanges in the ChangeManager. Storage is touched
exclusively by apply_changes / rollback_changes, and both are gated
behind human approval. All tools return MCP-format responses for
consistent handling by ToolRegistry.
"""

from __future__ import annotations

import logging
from typing import Any

from anvil.agent.changes import ChangeManager, ChangeSetError, FileChange
from anvil.events import EventBus, EventType
from anvil.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

_MAX_DIFF_CHARS = 20_000


def _mcp_response(text: str, *, is_error: bool = False, data: dict[str, Any] | None = None) -> dict[str, Any]:
    """Build MCP-format response."""
    response: dict[str, Any] = {"content": [{"type": "text", "text": text}]}
    if is_error:
        response["is_error"] = True
    if data:
        response["data"] = data
    return response


def _staged(change: FileChange) -> dict[str, Any]:
    added, removed = change.lines_changed()
    diff = change.diff
    if len(diff) > _MAX_DIFF_CHARS:
        diff = diff[:_MAX_DIFF_CHARS] + "\n... (diff truncated)"
    text = f"Staged {change.type} of {change.path} (+{added} -{removed})\n\n{diff}"
    return _mcp_response(text, data={"change_id": change.id})


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

_STAGE_WRITE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Stage writing a file (create or overwrite). Nothing is written until apply_changes",
    "properties": {
        "path": {"type": "string", "description": "File path relative to the workspace"},
        "content": {"type": "string", "description": "Full new content of the file"},
        "description": {"type": "string", "description": "Why this change is made"},
    },
    "required": ["path", "content"],
}

_STAGE_DELETE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Stage deleting a file. Nothing is deleted until apply_changes",
    "properties": {
        "path": {"type": "string", "description": "File path relative to the workspace"},
        "description": {"type": "string", "description": "Why this change is made"},
    },
    "required": ["path"],
}

_STAGE_RENAME_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Stage renaming a file. Nothing moves until apply_changes",
    "properties": {
        "old_path": {"type": "string", "description": "Current file path"},
        "new_path": {"type": "string", "description": "New file path"},
        "description": {"type": "string", "description": "Why this change is made"},
    },
    "required": ["old_path", "new_path"],
}

_PREVIEW_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Show the staged change set with per-file diffs",
    "properties": {},
}

_APPLY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Apply every staged change in order; rolls back automatically if one fails",
    "properties": {},
}

_ROLLBACK_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Undo the most recently applied change set",
    "properties": {},
}


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_change_tools(
    registry: ToolRegistry,
    changes: ChangeManager,
    bus: EventBus | None = None,
    session_id: str | None = None,
) -> None:
    """Register change-set tools bound to ``changes``."""
    storage = changes.storage

    async def _emit(event_type: EventType, data: dict[str, Any]) -> None:
        if bus is not None:
            await bus.publish(event_type, session_id, **data)

    async def stage_write(path: str, content: str, description: str = "") -> dict[str, Any]:
        new = content.encode("utf-8")
        try:
            if storage.exists(path):
                change = changes.add_file_modify(path, storage.read(path), new, description)
            else:
                change = changes.add_file_create(path, new, description)
        except OSError as e:
            return _mcp_response(f"Cannot stage {path}: {e}", is_error=True)
        return _staged(change)

    async def stage_delete(path: str, description: str = "") -> dict[str, Any]:
        try:
            old = storage.read(path)
        except OSError as e:
            return _mcp_response(f"Cannot stage delete of {path}: {e}", is_error=True)
        return _staged(changes.add_file_delete(path, old, description))

    async def stage_rename(old_path: str, new_path: str, description: str = "") -> dict[str, Any]:
        try:
            if not storage.exists(old_path):
                return _mcp_response(f"Cannot stage rename: {old_path} does not exist", is_error=True)
            if storage.exists(new_path):
                return _mcp_response(f"Cannot stage rename: {new_path} already exists", is_error=True)
        except OSError as e:
            return _mcp_response(f"Cannot stage rename of {old_path}: {e}", is_error=True)
        return _staged(changes.add_file_rename(old_path, new_path, description))

    async def preview_changes() -> dict[str, Any]:
        current = changes.get_current_change_set()
        text = changes.preview_changes()
        if current is not None and current.changes:
            diffs = "\n".join(c.diff for c in current.changes)
            text = f"{text}\n\n{diffs[:_MAX_DIFF_CHARS]}"
        return _mcp_response(text)

    async def apply_changes() -> dict[str, Any]:
        try:
            cs = changes.apply_change_set()
        except ChangeSetError as e:
            return _mcp_response(f"Apply failed: {e}", is_error=True)
        await _emit(EventType.CHANGESET_APPLIED, {"id": cs.id, "name": cs.name, "files": cs.affected_files()})
        return _mcp_response(f"Applied {cs.summary()}", data={"change_set_id": cs.id})

    async def rollback_changes() -> dict[str, Any]:
        try:
            cs = changes.rollback_change_set()
        except ChangeSetError as e:
            return _mcp_response(f"Rollback failed: {e}", is_error=True)
        await _emit(EventType.CHANGESET_ROLLED_BACK, {"id": cs.id, "name": cs.name})
        return _mcp_response(f"Rolled back {cs.name}", data={"change_set_id": cs.id})

    registry.register("stage_write", stage_write, _STAGE_WRITE_SCHEMA)
    registry.register("stage_delete", stage_delete, _STAGE_DELETE_SCHEMA)
    registry.register("stage_rename", stage_rename, _STAGE_RENAME_SCHEMA)
    registry.register("preview_changes", preview_changes, _PREVIEW_SCHEMA)
    registry.register(
        "apply_changes",
        apply_changes,
        _APPLY_SCHEMA,
        requires_approval=True,
        destructive=True,
        approval_reason="Writes the staged change set to the workspace",
        preview=lambda _args: changes.preview_changes(),
    )
    registry.register(
        "rollback_changes",
        rollback_changes,
        _ROLLBACK_SCHEMA,
        requires_approval=True,
        destructive=True,
        approval_reason="Reverts the last applied change set in the workspace",
    )
