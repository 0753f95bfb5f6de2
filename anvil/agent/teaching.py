"""Teaching mode: explanation depth and the prompts that request it."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class TeachingMode(StrEnum):
    OFF = "off"
    BASIC = "basic"
    DETAILED = "detailed"
    EXPERT = "expert"

    @property
    def description(self) -> str:
        return _DESCRIPTIONS[self]

    @classmethod
    def parse(cls, value: str) -> TeachingMode:
        """Lenient parse; unknown values fall back to OFF."""
        return _ALIASES.get(value.strip().lower(), cls.OFF)


_DESCRIPTIONS = {
    TeachingMode.OFF: "Concise responses, minimal explanations",
    TeachingMode.BASIC: "Brief explanations of key concepts",
    TeachingMode.DETAILED: "Comprehensive explanations with examples",
    TeachingMode.EXPERT: "Deep technical explanations for advanced users",
}

_ALIASES = {
    "off": TeachingMode.OFF, "none": TeachingMode.OFF, "0": TeachingMode.OFF,
    "basic": TeachingMode.BASIC, "brief": TeachingMode.BASIC, "1": TeachingMode.BASIC,
    "detailed": TeachingMode.DETAILED, "full": TeachingMode.DETAILED, "2": TeachingMode.DETAILED,
    "expert": TeachingMode.EXPERT, "advanced": TeachingMode.EXPERT, "3": TeachingMode.EXPERT,
}


@dataclass(frozen=True)
class TeachingConfig:
    mode: TeachingMode = TeachingMode.OFF
    explain_reasoning: bool = False
    show_alternatives: bool = False
    provide_examples: bool = False
    link_docs: bool = False

    @classmethod
    def for_mode(cls, mode: TeachingMode) -> TeachingConfig:
        if mode == TeachingMode.BASIC:
            return cls(mode=mode, explain_reasoning=True)
        if mode == TeachingMode.DETAILED:
            return cls(mode=mode, explain_reasoning=True, show_alternatives=True, provide_examples=True)
        if mode == TeachingMode.EXPERT:
            return cls(
                mode=mode,
                explain_reasoning=True,
                show_alternatives=True,
                provide_examples=True,
                link_docs=True,
            )
        return cls()


_MODE_INTRO = {
    TeachingMode.BASIC: "You are in teaching mode. Please provide brief explanations of your actions and key concepts.",
    TeachingMode.DETAILED: "You are in detailed teaching mode. Please provide comprehensive explanations with examples.",
    TeachingMode.EXPERT: (
        "You are in expert teaching mode. Please provide deep technical explanations "
        "suitable for advanced developers."
    ),
}


def teaching_prompt_addition(config: TeachingConfig) -> str:
    """Extra system-prompt text for the active mode ("" when off)."""
    if config.mode == TeachingMode.OFF:
        return ""

    parts = ["## Teaching Mode Active", "", _MODE_INTRO[config.mode], "", "When responding:"]
    if config.explain_reasoning:
        parts.append("- Explain your reasoning and decision-making process")
        parts.append("- Describe why you chose a particular approach")
    if config.show_alternatives:
        parts.append("- Mention alternative approaches when relevant")
        parts.append("- Discuss trade-offs between different solutions")
    if config.provide_examples:
        parts.append("- Provide concrete code examples to illustrate concepts")
        parts.append("- Show before/after comparisons when making changes")
    if config.link_docs:
        parts.append("- Reference relevant documentation or resources")
        parts.append("- Suggest further reading for deeper understanding")
    return "\n".join(parts)


def why_question(change: str, context: str = "") -> str:
    return (
        "I'd like to understand the reasoning behind this change:\n\n"
        f"Change: {change}\n\n"
        f"Context: {context}\n\n"
        "Please explain:\n"
        "1) Why was this change made?\n"
        "2) What problem does it solve?\n"
        "3) Were there alternative approaches considered?\n"
        "4) What are the implications of this change?"
    )


def concept_explanation(concept: str, related_code: str = "") -> str:
    prompt = f"Please explain the concept of '{concept}'"
    if related_code:
        prompt += f" in the context of this code:\n\n```\n{related_code}\n```"
    prompt += (
        "\n\nInclude:\n"
        "- A clear definition\n"
        "- Why it's important\n"
        "- Common use cases\n"
        "- Best practices"
    )
    return prompt


def code_review_explanation(code: str, issues: list[str] | None = None) -> str:
    parts = ["Please review and explain the following code:\n", f"```\n{code}\n```\n"]
    if issues:
        parts.append("Specific concerns:")
        parts.extend(f"- {issue}" for issue in issues)
        parts.append("")
    parts.append("Please provide:")
    parts.append("- An overview of what this code does")
    parts.append("- Analysis of potential issues")
    parts.append("- Suggestions for improvement")
    parts.append("- Best practices that apply here")
    return "\n".join(parts)
