"""Prompt hygiene for retrieved text embedded in completion prompts."""

from __future__ import annotations

import re

_INJECTION_PATTERNS = [
    re.compile(r"ignore\s+(all\s+)?previous\s+instructions", re.IGNORECASE),
    re.compile(r"ignore\s+the\s+above", re.IGNORECASE),
    re.compile(r"system\s+prompt", re.IGNORECASE),
    re.compile(r"developer\s+message", re.IGNORECASE),
    re.compile(r"you\s+are\s+chatgpt", re.IGNORECASE),
    re.compile(r"reveal\s+(your\s+)?instructions", re.IGNORECASE),
    re.compile(r"jailbreak", re.IGNORECASE),
    re.compile(r"do\s+not\s+follow", re.IGNORECASE),
    re.compile(r"tool\s+call", re.IGNORECASE),
]


def sanitize_text(text: str) -> tuple[str, int]:
    """
    Returns sanitized text and number of filtered suspicious lines.
    """
    clean_lines: list[str] = []
    filtered = 0
    for line in text.splitlines():
        if any(pattern.search(line) for pattern in _INJECTION_PATTERNS):
            filtered += 1
            continue
        clean_lines.append(line)
    sanitized = "\n".join(clean_lines).replace("\x00", " ").strip()
    return sanitized, filtered
