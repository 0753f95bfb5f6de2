"""Phase state machine and ordered plan steps.

Pure state with no I/O. Mutated only by the orchestrator's control task.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from enum import StrEnum


class Phase(StrEnum):
    UNDERSTAND = "understand"
    PLAN = "plan"
    ACT = "act"
    VERIFY = "verify"


_PHASE_ORDER = (Phase.UNDERSTAND, Phase.PLAN, Phase.ACT, Phase.VERIFY)


class StepStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class PlanStep:
    id: int
    description: str
    status: StepStatus = StepStatus.PENDING
    result: str = ""
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "description": self.description,
            "status": str(self.status),
            "result": self.result,
            "error": self.error,
        }


class Lifecycle:
    """Current phase plus the plan being executed.

    Invariant: at most one step is IN_PROGRESS, and ``_current`` points
    at it (or is -1 when none is).
    """

    def __init__(self) -> None:
        self._phase = Phase.UNDERSTAND
        self._steps: list[PlanStep] = []
        self._current = -1

    def current_phase(self) -> Phase:
        return self._phase

    def set_phase(self, phase: Phase) -> None:
        self._phase = phase

    def next_phase(self) -> Phase:
        """Advance cyclically; Verify wraps back to Understand."""
        idx = _PHASE_ORDER.index(self._phase)
        self._phase = _PHASE_ORDER[(idx + 1) % len(_PHASE_ORDER)]
        return self._phase

    def set_plan(self, descriptions: list[str]) -> None:
        """Replace the plan. Every step starts PENDING and the cursor resets."""
        self._steps = [PlanStep(id=i, description=d) for i, d in enumerate(descriptions)]
        self._current = -1

    def get_plan(self) -> list[PlanStep]:
        return copy.deepcopy(self._steps)

    def current_step(self) -> PlanStep | None:
        if self._current < 0:
            return None
        return copy.copy(self._steps[self._current])

    def start_next_step(self) -> PlanStep | None:
        """Mark the first PENDING step IN_PROGRESS and return a copy.

        If a step is already in progress it is returned unchanged. Returns
        None when no pending step remains.
        """
        if self._current >= 0:
            return copy.copy(self._steps[self._current])
        for i, step in enumerate(self._steps):
            if step.status == StepStatus.PENDING:
                step.status = StepStatus.IN_PROGRESS
                self._current = i
                return copy.copy(step)
        return None

    def complete_current_step(self, result: str = "") -> None:
        if self._current < 0:
            return
        step = self._steps[self._current]
        step.status = StepStatus.COMPLETED
        step.result = result
        self._current = -1

    def fail_current_step(self, error: str) -> None:
        if self._current < 0:
            return
        step = self._steps[self._current]
        step.status = StepStatus.FAILED
        step.error = error
        self._current = -1

    def all_steps_completed(self) -> bool:
        """True only for a non-empty plan whose steps are all COMPLETED."""
        if not self._steps:
            return False
        return all(s.status == StepStatus.COMPLETED for s in self._steps)

    def has_pending_steps(self) -> bool:
        return any(s.status == StepStatus.PENDING for s in self._steps)

    def has_failed_steps(self) -> bool:
        return any(s.status == StepStatus.FAILED for s in self._steps)

    def progress(self) -> float:
        """Percentage (0-100) of COMPLETED steps."""
        if not self._steps:
            return 0.0
        done = sum(1 for s in self._steps if s.status == StepStatus.COMPLETED)
        return done / len(self._steps) * 100

    def reset(self) -> None:
        self._phase = Phase.UNDERSTAND
        self._steps = []
        self._current = -1
