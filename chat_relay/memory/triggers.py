"""Cheap pattern filter deciding which user inputs may become memories."""

from __future__ import annotations

import re
from typing import List, Pattern

EXPLICIT_TRIGGERS = (
    "remember this",
    "remember that",
    "please remember",
    "don't forget",
    "do not forget",
    "keep in mind",
    "add to memory",
    "save to memory",
    "记住",
    "帮我记",
    "加入记忆",
    "牢记",
    "以后你都",
    "永远记",
    "保存到记忆",
)


def _compile(patterns: List[str]) -> List[Pattern[str]]:
    return [re.compile(p, re.IGNORECASE) for p in patterns]


IDENTITY_PATTERNS = _compile([
    r"\bmy name is\s+\S",
    r"\bi am an? \S",
    r"\bi'm an? \S",
    r"\bi live in\s+\S",
    r"\bi'm from\s+\S",
    r"\bi am from\s+\S",
    r"\bi work as\s+\S",
    r"我叫.+",
    r"我是.+",
    r"我住在.+",
    r"我来自.+",
    r"我的职业是.+",
])

PREFERENCE_PATTERNS = _compile([
    r"\bi prefer\s+\S",
    r"\bi like\s+\S",
    r"\bplease always\s+\S",
    r"\bfrom now on\b",
    r"\bi want you to\s+\S",
    r"我喜欢.+",
    r"我更喜欢.+",
    r"我希望你.+",
    r"以后请你.+",
    r"你以后回答我.+",
])

GOAL_PATTERNS = _compile([
    r"\bi plan to\s+\S",
    r"\bmy goal is\b",
    r"\bi'm going to\s+\S",
    r"\bin the future i want\b",
    r"我想在未来.+",
    r"我接下来.+",
    r"我计划.+",
    r"我打算.+",
    r"我的目标是.+",
])


class MemoryTriggerFilter:
    """Pure predicate over user input; matching is case-insensitive."""

    def __call__(self, text: str) -> bool:
        return self.should_remember(text)

    def should_remember(self, text: str) -> bool:
        if not text or not text.strip():
            return False
        candidate = text.strip()
        lowered = candidate.lower()
        if any(trigger in lowered for trigger in EXPLICIT_TRIGGERS):
            return True
        for group in (IDENTITY_PATTERNS, PREFERENCE_PATTERNS, GOAL_PATTERNS):
            if any(pattern.search(candidate) for pattern in group):
                return True
        return False
