"""
Heuristic fact extraction and memory context formatting.

Pulls short first-person statements ("I prefer ...", "my name is ...",
"remember that ...") out of user messages so they can be stored as
individual memories, and renders retrieved memories as a system prompt block.
"""

import re
from typing import Iterable

from .base import MemoryRecord

FACT_PATTERNS = [
    re.compile(r"\bi (?:am|like|love|hate|prefer|want|need|work as|live in) [^.,!?\n]+", re.IGNORECASE),
    re.compile(r"\bmy (?:name is|favorite|goal is|job is) [^.,!?\n]+", re.IGNORECASE),
    re.compile(r"\bremember that [^.,!?\n]+", re.IGNORECASE),
]

MEMORY_HEADER = "=== LONG-TERM MEMORY ==="
MEMORY_INTRO = "You have the following facts stored about this user/context:"
MEMORY_FOOTER = "========================"


def extract_facts(text: str) -> list[str]:
    """
    Extract candidate facts from free text.

    Returns unique matches in order of first appearance.
    """
    facts: list[str] = []
    seen: set[str] = set()
    for pattern in FACT_PATTERNS:
        for match in pattern.finditer(text or ""):
            fact = match.group(0).strip()
            key = fact.lower()
            if fact and key not in seen:
                seen.add(key)
                facts.append(fact)
    return facts


def format_memories(records: Iterable[MemoryRecord]) -> str:
    """
    Format memories as a block for a system message.

    Returns an empty string when there is nothing to inject.
    """
    lines = [record.to_context_string() for record in records]
    if not lines:
        return ""
    return "\n".join([MEMORY_HEADER, MEMORY_INTRO, *lines, MEMORY_FOOTER])
