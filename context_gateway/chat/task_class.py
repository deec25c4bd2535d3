"""Task classification for output caps, continuation limits and model choice.

Keyword heuristics over the latest user message. Used only when the request
does not pin max_output_tokens itself.
"""

from __future__ import annotations

import re
from enum import Enum


class TaskClass(str, Enum):
    QA = "qa"
    BUGFIX = "bugfix"
    CODEGEN_SMALL = "codegen-small"
    CODEGEN_LARGE = "codegen-large"
    SUMMARIZE = "summarize"
    PLAN = "plan"
    DETAILED = "detailed"


MAX_OUTPUT_TOKENS: dict[TaskClass, int] = {
    TaskClass.QA: 256,
    TaskClass.BUGFIX: 512,
    TaskClass.CODEGEN_SMALL: 768,
    TaskClass.CODEGEN_LARGE: 2048,
    TaskClass.SUMMARIZE: 256,
    TaskClass.PLAN: 512,
    TaskClass.DETAILED: 4096,
}

# Coding/heavy work is never interrupted in practice; QA and summaries are
CONTINUATION_LIMITS: dict[TaskClass, int] = {
    TaskClass.QA: 3,
    TaskClass.BUGFIX: 50,
    TaskClass.CODEGEN_SMALL: 50,
    TaskClass.CODEGEN_LARGE: 100,
    TaskClass.SUMMARIZE: 3,
    TaskClass.PLAN: 50,
    TaskClass.DETAILED: 100,
}

_DETAILED = re.compile(
    r"\b(detailed?|comprehensive|thorough|complete|explain\s+(in\s+)?detail|"
    r"full\s+explanation|deep\s+dive|elaborate)\b",
    re.IGNORECASE,
)
_QA = re.compile(r"\b(what\s+is|who\s+is|when|where|define|yes\s+or\s+no|count|list)\b", re.IGNORECASE)
_BUGFIX = re.compile(r"\b(error|bug|fix|broken|not\s+working|issue|debug|crash|exception)\b", re.IGNORECASE)
_SUMMARIZE = re.compile(r"\b(summarize|summary|tldr|brief|overview|key\s+points)\b", re.IGNORECASE)
_PLAN = re.compile(r"\b(plan|strategy|approach|design|architecture|how\s+should\s+i)\b", re.IGNORECASE)
_CODEGEN_LARGE = re.compile(r"\b(implement|create|build|write|generate|scaffold)\b", re.IGNORECASE)
_CODEGEN_SMALL = re.compile(
    r"\b(code|function|class|component|implement|write\s+(a\s+)?function)\b", re.IGNORECASE,
)


def classify_task(message: str) -> TaskClass:
    """First matching rule wins; short or unmatched messages are QA."""
    length = len(message or "")
    if _DETAILED.search(message or ""):
        return TaskClass.DETAILED
    if length < 100 or _QA.search(message):
        return TaskClass.QA
    if _BUGFIX.search(message):
        return TaskClass.BUGFIX
    if _SUMMARIZE.search(message):
        return TaskClass.SUMMARIZE
    if _PLAN.search(message):
        return TaskClass.PLAN
    if _CODEGEN_LARGE.search(message) and length > 800:
        return TaskClass.CODEGEN_LARGE
    if _CODEGEN_SMALL.search(message):
        return TaskClass.CODEGEN_SMALL
    return TaskClass.QA


def resolve_task_class(requested: str | None, message: str) -> TaskClass | None:
    """None when no class was requested; "auto" classifies the message."""
    if not requested:
        return None
    if requested == "auto":
        return classify_task(message)
    try:
        return TaskClass(requested)
    except ValueError:
        return None


def select_model(
    task_class: TaskClass, message_length: int, default_model: str, large_model: str,
) -> str:
    """Large model only for big code generation and long detailed requests."""
    if task_class is TaskClass.CODEGEN_LARGE:
        return large_model
    if task_class is TaskClass.DETAILED and message_length > 1000:
        return large_model
    return default_model
