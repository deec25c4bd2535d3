"""Continuation of truncated responses.

ContinuationRegistry holds one ContinuationState per thread for the duration
of a chained generation. The coordinator increments it on truncation and
discards it on natural completion or cancellation. Continuing is always the
caller's decision; nothing here auto-continues.
"""

from __future__ import annotations

import logging
import re

from context_gateway.models import ContinuationState

logger = logging.getLogger(__name__)

_LIST_ITEM = re.compile(r"^\s*(?:[-*]|\d+\.)\s")


def build_continuation_prompt(previous_text: str, continuation_index: int) -> str:
    """Instruction for the next chained call, shaped by where the text stopped."""
    stripped = (previous_text or "").strip()
    last_line = stripped.split("\n")[-1] if stripped else ""
    in_code_block = stripped.count("```") % 2 == 1

    prompt = "Continue exactly where you left off. Do NOT repeat previous content."
    if in_code_block:
        prompt += " You were in a code block - reopen it and continue the code."
    elif _LIST_ITEM.match(last_line):
        prompt += " Continue the list from where it ended."
    elif last_line.endswith(":"):
        prompt += " Continue from the section that was just started."
    else:
        prompt += " Resume from the last unfinished sentence."

    if continuation_index == 0:
        prompt += " This is the first continuation."
    elif continuation_index >= 3:
        prompt += (
            f" This is continuation {continuation_index + 1}. "
            "Consider wrapping up soon with a summary."
        )
    return prompt


class ContinuationRegistry:
    def __init__(self, max_continuations: int = 20):
        self.max_continuations = max_continuations
        self._states: dict[str, ContinuationState] = {}

    def get(self, thread_id: str) -> ContinuationState | None:
        return self._states.get(thread_id)

    def get_or_create(
        self, thread_id: str, max_continuations: int | None = None,
    ) -> ContinuationState:
        state = self._states.get(thread_id)
        if state is None:
            state = ContinuationState(
                thread_id=thread_id,
                max_continuations=(
                    self.max_continuations if max_continuations is None else max_continuations
                ),
            )
            self._states[thread_id] = state
        return state

    def record_truncation(
        self, thread_id: str, cost: float, stop_reason: str | None, text: str,
        max_continuations: int | None = None,
    ) -> ContinuationState:
        state = self.get_or_create(thread_id, max_continuations)
        state.continuation_count += 1
        state.cumulative_cost += cost
        state.last_stop_reason = stop_reason
        state.accumulated_text += text
        logger.info(
            "CONTINUATION_TRUNCATED | thread=%s | count=%d/%d | cumulative_cost=$%.6f",
            thread_id, state.continuation_count, state.max_continuations, state.cumulative_cost,
        )
        return state

    def discard(self, thread_id: str) -> ContinuationState | None:
        return self._states.pop(thread_id, None)

    def clear(self) -> None:
        self._states.clear()

    def __contains__(self, thread_id: str) -> bool:
        return thread_id in self._states
