"""
hardmem formatter -- render a HardMemoryContext into a system-prompt block.

Memories are taken greedily in context order while they fit in the
character budget. A memory is either included whole or not at all; when the
very first one is too large, a note pointing at ``./recall`` replaces it.
"""

import logging
from typing import List

from hardmem.types import HardMemoryContext, Memory

logger = logging.getLogger("hardmem.formatter")

CONTEXT_BUDGET = 8000
RESERVED_OVERHEAD = 500
AVAILABLE_BUDGET = CONTEXT_BUDGET - RESERVED_OVERHEAD
SEPARATOR_ALLOWANCE = 50

HEADER = "\n## 🗃️ Hard Memory Context"
SEPARATOR = "---"
TRAILER = (
    "\n💡 Use this information to provide more informed and contextual responses. "
    "Reference these memories when relevant, and suggest creating new memories for "
    "important information shared in our conversation."
)


def format_date(memory: Memory) -> str:
    dt = memory.created_at
    return f"{dt.month}/{dt.day}/{dt.year}"


def memory_header(index: int, memory: Memory) -> str:
    """Header for the memory at 0-based *index*: number, title, tags, date."""
    tags = f" ({' '.join('#' + t for t in memory.tags)})" if memory.tags else ""
    return f"\n**{index + 1}. {memory.title}**{tags}\n*Created: {format_date(memory)}*\n"


def memory_cost(index: int, memory: Memory) -> int:
    return len(memory_header(index, memory)) + len(memory.content) + SEPARATOR_ALLOWANCE


class BudgetReport:
    """Which memories of a context fit in the prompt budget."""

    __slots__ = ("included", "skipped", "budget_used", "first_too_large")

    def __init__(self, included: List[int], skipped: List[int], budget_used: int, first_too_large: bool):
        self.included = included
        self.skipped = skipped
        self.budget_used = budget_used
        self.first_too_large = first_too_large

    @property
    def remaining(self) -> int:
        return AVAILABLE_BUDGET - self.budget_used

    def to_dict(self) -> dict:
        return {
            "included": list(self.included),
            "skipped": list(self.skipped),
            "budget_used": self.budget_used,
            "available": AVAILABLE_BUDGET,
            "first_too_large": self.first_too_large,
        }


def budget_report(context: HardMemoryContext) -> BudgetReport:
    """First-fit from the top: stop at the first memory that does not fit."""
    memories = context.found_memories
    remaining = AVAILABLE_BUDGET
    included = []
    for i, memory in enumerate(memories):
        cost = memory_cost(i, memory)
        if cost > remaining:
            return BudgetReport(included, list(range(i, len(memories))), AVAILABLE_BUDGET - remaining, i == 0)
        included.append(i)
        remaining -= cost
    return BudgetReport(included, [], AVAILABLE_BUDGET - remaining, False)


def format_hard_memory_for_prompt(context: HardMemoryContext) -> str:
    """Prompt block for *context*; empty string when it holds no memories."""
    memories = context.found_memories
    if not memories:
        return ""

    report = budget_report(context)
    parts = [HEADER, f"Found {len(memories)} relevant memories from your persistent knowledge base:"]
    for i in report.included:
        memory = memories[i]
        parts.append(memory_header(i, memory))
        parts.append(memory.content)
        if i < len(memories) - 1:
            parts.append(SEPARATOR)
    if report.first_too_large:
        first = memories[0]
        parts.append(f'\n⚠️ **Memory "{first.title}" too large for context** ({len(first.content)} chars)')
        parts.append(f'*Use "./recall {first.title}" for full content*')
    parts.append(TRAILER)

    logger.debug(
        "Formatted %d/%d memories, %d/%d budget used",
        len(report.included), len(memories), report.budget_used, AVAILABLE_BUDGET,
    )
    return "\n".join(parts)
