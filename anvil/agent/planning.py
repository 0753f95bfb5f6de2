"""Heuristics for reading plans and intents out of free-form model text.

These are substring and line-pattern checks, so they can misclassify.
Structured tool calls returned by the model service always take
precedence over anything detected here.
"""

from __future__ import annotations

import re

from anvil.schemas import TOOL_USE_OPEN

_PLAN_MARKERS = ("plan:", "steps:", "here's my plan", "i will:")
_ACTION_MARKERS = (TOOL_USE_OPEN, "let me", "i'll read", "i'll check", "reading", "checking")

# "Step 3: ...", "step 3 - ..."
_STEP_LINE = re.compile(r"^\s*step\s+(\d+)\s*[:.)-]\s*(.+)$", re.IGNORECASE)
# "1. ...", "2) ..."
_NUMBERED_LINE = re.compile(r"^\s*(\d+)[.)]\s+(.+)$")
_FIRST_STEP = re.compile(r"^\s*(step\s+1\s*:|1[.)]\s)", re.IGNORECASE | re.MULTILINE)


def contains_plan(text: str) -> bool:
    lower = text.lower()
    if any(marker in lower for marker in _PLAN_MARKERS):
        return True
    return _FIRST_STEP.search(text) is not None


def indicates_action(text: str) -> bool:
    lower = text.lower()
    return any(marker.lower() in lower for marker in _ACTION_MARKERS)


def extract_plan_steps(text: str) -> list[str]:
    """Pull "Step N:" lines, or failing that numbered-list lines, as steps.

    Tool-call blocks are ignored so JSON inside them is never read as a plan.
    """
    prose = re.sub(r"<tool_use>.*?</tool_use>", "", text, flags=re.DOTALL)
    lines = prose.splitlines()

    steps = [m.group(2).strip() for m in map(_STEP_LINE.match, lines) if m]
    if steps:
        return steps
    return [m.group(2).strip() for m in map(_NUMBERED_LINE.match, lines) if m]
