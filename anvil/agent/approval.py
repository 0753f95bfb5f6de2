"""Registry of human-approval decisions for effectful tool calls.

The manager only records decisions. It never executes a tool; the
orchestrator remains the sole executor of approved calls.
"""

from __future__ import annotations

import copy
import itertools
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum

from anvil.schemas import ApprovalRequest, ToolCall

logger = logging.getLogger(__name__)


class ApprovalStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass
class ApprovalItem:
    id: str
    tool_call: ToolCall
    request: ApprovalRequest
    status: ApprovalStatus = ApprovalStatus.PENDING
    reason: str = ""  # rejection reason

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "tool_call": self.tool_call.model_dump(mode="json"),
            "request": self.request.model_dump(mode="json"),
            "status": str(self.status),
            "reason": self.reason,
        }


# Called as callback(item) after a status change
ApprovalCallback = Callable[[ApprovalItem], None]


class ApprovalError(Exception):
    """Base class for approval-state errors."""


class ApprovalNotFoundError(ApprovalError):
    def __init__(self, approval_id: str) -> None:
        super().__init__(f"approval item {approval_id} not found")
        self.approval_id = approval_id


class ApprovalAlreadyResolvedError(ApprovalError):
    def __init__(self, approval_id: str, status: ApprovalStatus) -> None:
        super().__init__(f"approval item {approval_id} is not pending (already {status})")
        self.approval_id = approval_id
        self.status = status


class ApprovalManager:
    """FIFO-ordered, lock-guarded approval registry.

    Every accessor returns copies, so callers can never change a status
    except through approve()/reject().
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: dict[str, ApprovalItem] = {}  # insertion-ordered
        self._ids = itertools.count()
        self._callback: ApprovalCallback | None = None

    def set_callback(self, callback: ApprovalCallback | None) -> None:
        with self._lock:
            self._callback = callback

    def add(self, tool_call: ToolCall, request: ApprovalRequest) -> ApprovalItem:
        with self._lock:
            item = ApprovalItem(
                id=f"approval_{next(self._ids)}",
                tool_call=tool_call.model_copy(deep=True),
                request=request.model_copy(deep=True),
            )
            self._items[item.id] = item
            return copy.deepcopy(item)

    def add_pending(self, pending: list[tuple[ToolCall, ApprovalRequest]]) -> list[ApprovalItem]:
        return [self.add(call, request) for call, request in pending]

    def get(self, approval_id: str) -> ApprovalItem:
        with self._lock:
            item = self._items.get(approval_id)
            if item is None:
                raise ApprovalNotFoundError(approval_id)
            return copy.deepcopy(item)

    def get_pending(self) -> list[ApprovalItem]:
        with self._lock:
            return [
                copy.deepcopy(i) for i in self._items.values()
                if i.status == ApprovalStatus.PENDING
            ]

    def get_all(self) -> list[ApprovalItem]:
        with self._lock:
            return [copy.deepcopy(i) for i in self._items.values()]

    def approve(self, approval_id: str) -> ApprovalItem:
        return self._resolve(approval_id, ApprovalStatus.APPROVED, "")

    def reject(self, approval_id: str, reason: str = "") -> ApprovalItem:
        return self._resolve(approval_id, ApprovalStatus.REJECTED, reason)

    def approve_all(self) -> list[str]:
        """Approve every pending item. Returns the ids approved."""
        return self._resolve_all(ApprovalStatus.APPROVED, "")

    def reject_all(self, reason: str = "") -> list[str]:
        return self._resolve_all(ApprovalStatus.REJECTED, reason)

    def has_pending(self) -> bool:
        with self._lock:
            return any(i.status == ApprovalStatus.PENDING for i in self._items.values())

    def pending_count(self) -> int:
        with self._lock:
            return sum(1 for i in self._items.values() if i.status == ApprovalStatus.PENDING)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def clear_resolved(self) -> None:
        """Drop every non-pending item, keeping pending ones in order."""
        with self._lock:
            self._items = {
                k: v for k, v in self._items.items() if v.status == ApprovalStatus.PENDING
            }

    def _resolve(self, approval_id: str, status: ApprovalStatus, reason: str) -> ApprovalItem:
        with self._lock:
            item = self._items.get(approval_id)
            if item is None:
                raise ApprovalNotFoundError(approval_id)
            if item.status != ApprovalStatus.PENDING:
                raise ApprovalAlreadyResolvedError(approval_id, item.status)
            item.status = status
            item.reason = reason
            snapshot = copy.deepcopy(item)
            callback = self._callback

        logger.debug("Approval %s -> %s", approval_id, status)
        if callback is not None:
            callback(snapshot)
        return snapshot

    def _resolve_all(self, status: ApprovalStatus, reason: str) -> list[str]:
        with self._lock:
            pending_ids = [
                i.id for i in self._items.values() if i.status == ApprovalStatus.PENDING
            ]
        resolved = []
        for approval_id in pending_ids:
            try:
                self._resolve(approval_id, status, reason)
            except ApprovalError:
                # Resolved concurrently between the snapshot and now
                continue
            resolved.append(approval_id)
        return resolved


def format_approval_request(item: ApprovalItem) -> str:
    """Human-readable description of an approval for display."""
    lines = [
        "Approval Required",
        "",
        f"Action: {item.request.action}",
        f"Reason: {item.request.reason}",
    ]
    if item.request.destructive:
        lines.append("WARNING: This action is destructive and may not be reversible.")
    if item.request.preview:
        lines.extend(["", "Preview:", item.request.preview])
    lines.extend(["", f"Tool: {item.tool_call.name}"])
    if item.tool_call.arguments:
        lines.append("Arguments:")
        for key, value in item.tool_call.arguments.items():
            lines.append(f"  {key}: {value}")
    return "\n".join(lines)
