"""LLM provider adapter using litellm.

The gateway only needs one capability from the provider:

    generate(model, system_prompt, messages, max_output_tokens)
        -> ordered ProviderChunk stream: text deltas, then a stop reason and
           (when the provider reports it) token usage

All calls stream with heartbeat liveness detection:
- No hard timeout on the whole call
- Liveness = chunks keep arriving
- No chunk for heartbeat_seconds -> HeartbeatTimeoutError (a ProviderError)

Any litellm failure surfaces as ProviderError. Nothing is retried here.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Protocol

import litellm

from context_gateway.config import settings
from context_gateway.errors import ProviderError

logger = logging.getLogger(__name__)


class HeartbeatTimeoutError(ProviderError):
    """LLM stopped sending tokens (heartbeat dead)."""


@dataclass(frozen=True)
class ProviderUsage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(frozen=True)
class ProviderChunk:
    text: str = ""
    stop_reason: str | None = None
    usage: ProviderUsage | None = None


class Provider(Protocol):
    def generate(
        self,
        model: str,
        system_prompt: str,
        messages: list[dict],
        max_output_tokens: int,
    ) -> AsyncIterator[ProviderChunk]: ...


class LLMProvider:
    """Streaming provider backed by litellm.acompletion."""

    def __init__(
        self,
        heartbeat_seconds: float | None = None,
        temperature: float | None = None,
    ):
        self.heartbeat_seconds = heartbeat_seconds or settings.provider_heartbeat_seconds
        self.temperature = settings.temperature if temperature is None else temperature

    async def generate(
        self,
        model: str,
        system_prompt: str,
        messages: list[dict],
        max_output_tokens: int,
    ) -> AsyncIterator[ProviderChunk]:
        llm_messages = []
        if system_prompt:
            llm_messages.append({"role": "system", "content": system_prompt})
        llm_messages.extend(messages)

        kwargs: dict = {
            "model": model,
            "messages": llm_messages,
            "temperature": self.temperature,
            "max_tokens": max_output_tokens,
            "stream": True,
            "stream_options": {"include_usage": True},
        }

        logger.info("LLM streaming call: model=%s max_tokens=%d", model, max_output_tokens)

        try:
            response = await litellm.acompletion(**kwargs)
        except Exception as e:
            raise ProviderError(f"Provider call failed: {e}") from e

        stop_reason: str | None = None
        usage: ProviderUsage | None = None
        try:
            async for chunk in self._iter_with_heartbeat(response):
                chunk_usage = _extract_usage(chunk)
                if chunk_usage is not None:
                    usage = chunk_usage

                choice = chunk.choices[0] if getattr(chunk, "choices", None) else None
                if choice is None:
                    continue
                if getattr(choice, "finish_reason", None):
                    stop_reason = choice.finish_reason
                delta = getattr(choice, "delta", None)
                text = getattr(delta, "content", None) if delta else None
                if text:
                    yield ProviderChunk(text=text)
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(f"Provider stream failed: {e}") from e

        logger.info(
            "LLM streaming complete: model=%s stop_reason=%s usage=%s",
            model, stop_reason, usage,
        )
        yield ProviderChunk(stop_reason=stop_reason or "stop", usage=usage)

    async def _iter_with_heartbeat(self, stream):
        """Iterate over streaming chunks with heartbeat timeout."""
        aiter = stream.__aiter__()
        while True:
            try:
                chunk = await asyncio.wait_for(
                    aiter.__anext__(),
                    timeout=self.heartbeat_seconds,
                )
                yield chunk
            except asyncio.TimeoutError:
                raise HeartbeatTimeoutError(
                    f"LLM stopped sending tokens for {self.heartbeat_seconds}s"
                )
            except StopAsyncIteration:
                return


def _extract_usage(chunk) -> ProviderUsage | None:
    usage = getattr(chunk, "usage", None)
    if not usage:
        return None
    input_tokens = getattr(usage, "prompt_tokens", None)
    output_tokens = getattr(usage, "completion_tokens", None)
    if input_tokens is None and output_tokens is None:
        return None
    return ProviderUsage(int(input_tokens or 0), int(output_tokens or 0))
