"""Pytest configuration for context-gateway tests.

Sets up minimal environment for unit tests without requiring MongoDB or an
LLM provider. Provider calls are replaced by ScriptedProvider.
"""

import asyncio
import os
import sys

import pytest

# Add package root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

# Always in-memory stores, never a real MongoDB
os.environ["GATEWAY_MONGODB_URL"] = ""
os.environ.setdefault("GATEWAY_RATE_LIMIT_SWEEP_SECONDS", "0")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from context_gateway.errors import ProviderError  # noqa: E402
from context_gateway.llm.provider import ProviderChunk, ProviderUsage  # noqa: E402


class FakeClock:
    """Monotonic-style clock advanced by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedProvider:
    """Provider double that replays scripted deltas.

    Each generate() call consumes the next script:
        {"deltas": [...], "stop_reason": "stop", "usage": (in, out),
         "fail_after": None | int, "hang_after": None | int}

    hang_after=N blocks after N deltas until the call is cancelled, which is
    how tests observe that cancellation doesn't wait for the provider.
    """

    def __init__(self, *scripts: dict):
        self.scripts = list(scripts)
        self.calls: list[dict] = []
        self.closed = 0

    def add(self, **script) -> None:
        self.scripts.append(script)

    async def generate(self, model, system_prompt, messages, max_output_tokens):
        script = self.scripts.pop(0) if self.scripts else {"deltas": ["ok"]}
        self.calls.append({
            "model": model,
            "system_prompt": system_prompt,
            "messages": messages,
            "max_output_tokens": max_output_tokens,
        })
        try:
            for i, delta in enumerate(script.get("deltas", [])):
                if script.get("fail_after") == i:
                    raise ProviderError("provider exploded")
                if script.get("hang_after") == i:
                    await asyncio.Event().wait()
                yield ProviderChunk(text=delta)
                await asyncio.sleep(0)
            if script.get("fail_after") == len(script.get("deltas", [])):
                raise ProviderError("provider exploded")
            if script.get("hang_after") == len(script.get("deltas", [])):
                await asyncio.Event().wait()
            usage = script.get("usage", (100, 50))
            yield ProviderChunk(
                stop_reason=script.get("stop_reason", "stop"),
                usage=ProviderUsage(*usage) if usage else None,
            )
        finally:
            self.closed += 1


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def provider():
    return ScriptedProvider()
