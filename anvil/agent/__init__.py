"""Agent module -- the orchestration core.

Public API:
    AgentOrchestrator   - Drives Understand/Plan/Act/Verify for one session
    Response            - Per-call result handed back to the caller
    ConversationContext - Bounded message window
    Lifecycle           - Phase state machine + plan steps
    ApprovalManager     - Human-approval registry
    ChangeManager       - Transactional multi-file changes
"""

from anvil.agent.approval import (
    ApprovalAlreadyResolvedError,
    ApprovalError,
    ApprovalItem,
    ApprovalManager,
    ApprovalNotFoundError,
    ApprovalStatus,
    format_approval_request,
)
from anvil.agent.changes import (
    ChangeApplyError,
    ChangeManager,
    ChangeRollbackError,
    ChangeSet,
    ChangeSetError,
    ChangeSetOpenError,
    ChangeType,
    FileChange,
    LocalStorage,
    NoChangeSetError,
    Storage,
)
from anvil.agent.context import ContextConfig, ContextStats, ConversationContext
from anvil.agent.lifecycle import Lifecycle, Phase, PlanStep, StepStatus
from anvil.agent.orchestrator import (
    AgentError,
    AgentOrchestrator,
    LoopExhaustedError,
    ModelServiceError,
    PendingApprovalsError,
    Response,
    ToolExecutor,
)
from anvil.agent.teaching import TeachingConfig, TeachingMode

__all__ = [
    "AgentError",
    "AgentOrchestrator",
    "ApprovalAlreadyResolvedError",
    "ApprovalError",
    "ApprovalItem",
    "ApprovalManager",
    "ApprovalNotFoundError",
    "ApprovalStatus",
    "ChangeApplyError",
    "ChangeManager",
    "ChangeRollbackError",
    "ChangeSet",
    "ChangeSetError",
    "ChangeSetOpenError",
    "ChangeType",
    "ContextConfig",
    "ContextStats",
    "ConversationContext",
    "FileChange",
    "Lifecycle",
    "LocalStorage",
    "LoopExhaustedError",
    "ModelServiceError",
    "NoChangeSetError",
    "PendingApprovalsError",
    "Phase",
    "PlanStep",
    "Response",
    "StepStatus",
    "Storage",
    "TeachingConfig",
    "TeachingMode",
    "ToolExecutor",
    "format_approval_request",
]
